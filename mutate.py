import base64
import functools
import logging
import sys

import pydantic
from pydantic import ConfigDict, Field

from flask import Flask, request, jsonify, current_app
from werkzeug.exceptions import BadRequest, UnsupportedMediaType

from models import (
    BaseModel,
    AdmissionRequest,
    AdmissionReview,
    AdmissionResponse,
    AdmissionReviewStatus,
    Decision,
    PatchType,
    Pod,
)

from providers import KubernetesProvider
from sidecar import SidecarConfig, build_patch
from exc import (
    ConfigurationError,
    PatchError,
    PodParseError,
    ProviderError,
)

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

KUBEVIRT_LABEL = "kubevirt.io"
KUBEVIRT_LABEL_PREFIXES = ("kubevirt.io", "vm.kubevirt.io")
DEFAULT_SERVICE_ACCOUNT = "default"


class DEFAULTS:
    VIRTIOFS_IMAGE = "quay.io/kubevirt/virt-launcher:v1.5.1"
    RESOURCE_REQUESTS_CPU = "10m"
    RESOURCE_REQUESTS_MEMORY = "1M"
    RESOURCE_LIMITS_CPU = "100m"
    RESOURCE_LIMITS_MEMORY = "128Mi"
    ROLE_ANNOTATION = "eks.amazonaws.com/role-arn"
    LOOKUP_TIMEOUT = 5
    PROVIDER = KubernetesProvider
    PORT = 8443
    TLS_CERT_FILE = "/etc/webhook/certs/tls.crt"
    TLS_KEY_FILE = "/etc/webhook/certs/tls.key"


def jsonresponse():
    """Transforms the response from a view function into a JSON object."""

    def _outer(func):
        @functools.wraps(func)
        def _inner(*args, **kwargs):
            res = func(*args, **kwargs)
            if isinstance(res, BaseModel):
                return jsonify(res.model_dump(exclude_none=True))
            else:
                return jsonify(res)

        return _inner

    return _outer


def is_kubevirt_pod(pod: Pod) -> bool:
    """A pod belongs to KubeVirt if it carries any kubevirt.io label key.

    Only label keys are examined; their values are irrelevant.
    """
    labels = pod.metadata.labels
    if KUBEVIRT_LABEL in labels:
        return True

    return any(key.startswith(KUBEVIRT_LABEL_PREFIXES) for key in labels)


def parse_pod(obj) -> Pod:
    try:
        return Pod.model_validate(obj)
    except pydantic.ValidationError as err:
        raise PodParseError(str(err)) from err


def deny(message: str) -> Decision:
    LOG.warning("denying request: %s", message)
    return Decision(allowed=False, message=message)


def decide(
    admission_request: AdmissionRequest,
    provider,
    sidecar_config: SidecarConfig,
    role_annotation: str,
) -> Decision:
    """Decide whether a pod needs the virtiofs token sidecar.

    Pods are only patched when they belong to KubeVirt and run as a service
    account annotated with an IAM role. An unreadable pod, a failed service
    account lookup or a patch that cannot be serialized denies the request.
    """

    # The webhook is only registered for pods, but other kinds pass through.
    if admission_request.kind.kind != "Pod":
        return Decision(allowed=True)

    try:
        pod = parse_pod(admission_request.object)
    except PodParseError as err:
        return deny(f"could not parse pod object: {err}")

    if not is_kubevirt_pod(pod):
        LOG.debug("skipping non-kubevirt pod %s", pod.metadata.name)
        return Decision(allowed=True)

    # Pods created by controllers have no namespace in their metadata yet.
    namespace = pod.metadata.namespace or admission_request.namespace
    sa_name = pod.spec.serviceAccountName or DEFAULT_SERVICE_ACCOUNT

    if not namespace:
        return deny(f"failed to get service account {sa_name}: pod has no namespace")

    try:
        service_account = provider.service_account(namespace, sa_name)
    except Exception as err:
        return deny(f"failed to get service account {namespace}/{sa_name}: {err}")

    role_arn = service_account.metadata.annotations.get(role_annotation)
    if role_arn is None:
        LOG.debug(
            "service account %s/%s has no %s annotation",
            namespace,
            sa_name,
            role_annotation,
        )
        return Decision(allowed=True)

    try:
        patch = build_patch(role_arn, sidecar_config)
    except PatchError as err:
        return deny(f"failed to create patch: {err}")

    LOG.info(
        "adding virtiofs sidecar to pod %s/%s (service account %s, role %s)",
        namespace,
        pod.metadata.name or admission_request.name,
        sa_name,
        role_arn,
    )
    return Decision(allowed=True, patch=patch)


def admission_review(
    admission_request: AdmissionRequest, decision: Decision
) -> AdmissionReview:
    """Wrap a decision in the AdmissionReview the API server expects."""

    response = {"uid": admission_request.uid, "allowed": decision.allowed}
    if decision.patch:
        response["patchType"] = PatchType.JSONPatch
        response["patch"] = base64.b64encode(decision.patch)
    if decision.message:
        response["status"] = AdmissionReviewStatus(message=decision.message)

    return AdmissionReview(response=AdmissionResponse(**response))


@jsonresponse()
def mutate_pod():
    if request.mimetype != "application/json":
        raise UnsupportedMediaType("invalid Content-Type, want `application/json`")

    body = AdmissionReview.model_validate(request.get_json())
    if body.request is None:
        raise BadRequest("AdmissionReview request is required")

    decision = decide(
        body.request,
        current_app.provider,
        current_app.sidecar_config,
        current_app.config["ROLE_ANNOTATION"],
    )

    return admission_review(body.request, decision)


def handle_validationerror(err):
    return str(err), 400, {"content-type": "text/plain"}


def handle_badrequest(err):
    return err.description, 400, {"content-type": "text/plain"}


def health():
    return "OK", 200, {"content-type": "text/plain"}


class ServerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    lookup_timeout: pydantic.PositiveFloat
    port: int = Field(ge=1, le=65535)


def load_server_config(config) -> ServerConfig:
    try:
        return ServerConfig(
            lookup_timeout=config["LOOKUP_TIMEOUT"], port=config["PORT"]
        )
    except pydantic.ValidationError as err:
        raise ConfigurationError(f"invalid server configuration: {err}") from err


def load_sidecar_config(config) -> SidecarConfig:
    try:
        return SidecarConfig(
            image=config["VIRTIOFS_IMAGE"],
            requests_cpu=config["RESOURCE_REQUESTS_CPU"],
            requests_memory=config["RESOURCE_REQUESTS_MEMORY"],
            limits_cpu=config["RESOURCE_LIMITS_CPU"],
            limits_memory=config["RESOURCE_LIMITS_MEMORY"],
        )
    except pydantic.ValidationError as err:
        raise ConfigurationError(f"invalid sidecar configuration: {err}") from err


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    This makes it much easier to write tests for the application, since we can
    set up the test environment before instantiating the app. This is difficult
    to do if the app is created at `import` time.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("IRSA_WEBHOOK")
    if config:
        app.config.update(config)

    if not app.config.get("ROLE_ANNOTATION"):
        LOG.error("Missing role annotation configuration")
        sys.exit(1)

    try:
        app.server_config = load_server_config(app.config)
        app.sidecar_config = load_sidecar_config(app.config)
        app.provider = app.config["PROVIDER"](
            request_timeout=app.server_config.lookup_timeout
        )
    except (ConfigurationError, ProviderError) as err:
        LOG.error("%s", err)
        sys.exit(1)

    app.errorhandler(pydantic.ValidationError)(handle_validationerror)
    app.errorhandler(BadRequest)(handle_badrequest)
    app.add_url_rule("/healthz", view_func=health)
    app.add_url_rule("/mutate", view_func=mutate_pod, methods=["POST"])

    return app


def main():
    app = create_app()
    port = app.server_config.port
    LOG.info(
        "starting webhook on port %d (image %s)",
        port,
        app.sidecar_config.image,
    )
    app.run(
        host="0.0.0.0",
        port=port,
        ssl_context=(app.config["TLS_CERT_FILE"], app.config["TLS_KEY_FILE"]),
    )


if __name__ == "__main__":
    main()
