import logging

from kubernetes import config, client
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic.exceptions import DynamicApiError, NotFoundError
from openshift.dynamic import DynamicClient
from typing_extensions import Protocol
from urllib3.exceptions import HTTPError

from exc import ProviderError
from models import ServiceAccount

LOG = logging.getLogger(__name__)


class Provider(Protocol):
    def service_account(self, namespace: str, name: str) -> ServiceAccount: ...


class KubernetesProvider(Provider):
    def __init__(self, request_timeout=None):
        """Allocate a Kubernetes dynamic client and ServiceAccount API client"""

        super().__init__()

        try:
            config.load_config()
        except config.ConfigException as err:
            LOG.warning("unable to configure Kubernetes client: %s", err)
            raise ProviderError("unable to configure Kubernetes client")

        k8s_client = client.ApiClient()
        dyn_client = DynamicClient(k8s_client)

        self._client = dyn_client
        self._request_timeout = request_timeout
        self._service_account_resource = dyn_client.resources.get(
            api_version="v1", kind="ServiceAccount"
        )

    def service_account(self, namespace, name):
        """Fetch a ServiceAccount, raising ProviderError if it cannot be read.

        Missing service accounts and transport failures are reported the same
        way; callers do not retry.
        """

        try:
            sa_obj = self._service_account_resource.get(
                name=name,
                namespace=namespace,
                _request_timeout=self._request_timeout,
            )
        except NotFoundError:
            raise ProviderError(f'serviceaccounts "{name}" not found')
        except (DynamicApiError, ApiException, HTTPError) as err:
            LOG.warning("failed to read service account %s/%s: %s", namespace, name, err)
            raise ProviderError(str(err))

        return ServiceAccount.model_validate(sa_obj.to_dict())
