import pytest

import mutate

from exc import ProviderError
from models import Metadata, ServiceAccount


ROLE_ARN = "arn:aws:iam::123:role/x"

SERVICE_ACCOUNTS = {
    ("ns1", "kv-sa"): {"eks.amazonaws.com/role-arn": ROLE_ARN},
    ("ns1", "plain-sa"): {},
    ("ns2", "default"): {"eks.amazonaws.com/role-arn": ROLE_ARN},
}


class FakeProvider:
    def __init__(self, request_timeout=None):
        self.request_timeout = request_timeout
        self.lookups = []

    def service_account(self, namespace, name):
        self.lookups.append((namespace, name))
        try:
            annotations = SERVICE_ACCOUNTS[namespace, name]
        except KeyError:
            raise ProviderError(f'serviceaccounts "{name}" not found')

        return ServiceAccount(
            metadata=Metadata(name=name, namespace=namespace, annotations=annotations)
        )


@pytest.fixture()
def fake_provider():
    return FakeProvider()


@pytest.fixture()
def app():
    app = mutate.create_app(
        PROVIDER=FakeProvider,
        TESTING=True,
    )
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def sidecar_config(app):
    return app.sidecar_config
