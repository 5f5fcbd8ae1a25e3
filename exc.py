class ApplicationError(Exception):
    pass


class ConfigurationError(ApplicationError):
    pass


class ProviderError(ApplicationError):
    pass


class PodParseError(ApplicationError):
    pass


class PatchError(ApplicationError):
    pass
