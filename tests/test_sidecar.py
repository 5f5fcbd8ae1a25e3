import json

import pytest
import pydantic

import sidecar

from sidecar import SidecarConfig


EXPECTED_CONTAINER = {
    "name": "virtiofs-aws-iam-token",
    "image": "quay.io/kubevirt/virt-launcher:v1.5.1",
    "command": ["/usr/libexec/virtiofsd"],
    "args": [
        "--socket-path=/var/run/kubevirt/virtiofs-containers/aws-iam-token.sock",
        "--shared-dir=/var/run/secrets/eks.amazonaws.com/serviceaccount",
        "--sandbox=none",
        "--cache=auto",
        "--migration-on-error=guest-error",
        "--migration-mode=find-paths",
    ],
    "resources": {
        "limits": {"cpu": "100m", "memory": "128Mi"},
        "requests": {"cpu": "10m", "memory": "1M"},
    },
    "volumeMounts": [
        {
            "name": "virtiofs-containers",
            "mountPath": "/var/run/kubevirt/virtiofs-containers",
        }
    ],
    "imagePullPolicy": "IfNotPresent",
    "securityContext": {
        "capabilities": {"drop": ["ALL"]},
        "runAsUser": 107,
        "runAsGroup": 107,
        "runAsNonRoot": True,
        "allowPrivilegeEscalation": False,
    },
}


def make_config(**overrides):
    values = {
        "image": "quay.io/kubevirt/virt-launcher:v1.5.1",
        "requests_cpu": "10m",
        "requests_memory": "1M",
        "limits_cpu": "100m",
        "limits_memory": "128Mi",
    }
    values.update(overrides)
    return SidecarConfig(**values)


def test_patch_appends_sidecar():
    patch = json.loads(sidecar.build_patch("arn:aws:iam::123:role/x", make_config()))
    assert patch == [
        {"op": "add", "path": "/spec/containers/-", "value": EXPECTED_CONTAINER}
    ]


def test_patch_is_compact_json():
    patch = sidecar.build_patch("arn:aws:iam::123:role/x", make_config())
    assert patch.startswith(
        b'[{"op":"add","path":"/spec/containers/-",'
        b'"value":{"name":"virtiofs-aws-iam-token",'
    )


def test_patch_is_deterministic():
    config = make_config()
    first = sidecar.build_patch("arn:aws:iam::123:role/x", config)
    second = sidecar.build_patch("arn:aws:iam::123:role/x", make_config())
    assert first == second


def test_patch_does_not_depend_on_role():
    config = make_config()
    assert sidecar.build_patch(
        "arn:aws:iam::123:role/x", config
    ) == sidecar.build_patch("arn:aws:iam::456:role/y", config)


def test_patch_uses_configured_image_and_resources():
    config = make_config(
        image="registry.example.com/virt-launcher:test",
        requests_cpu="50m",
        requests_memory="64Mi",
        limits_cpu="1",
        limits_memory="1Gi",
    )
    (action,) = json.loads(sidecar.build_patch("role", config))
    container = action["value"]
    assert container["image"] == "registry.example.com/virt-launcher:test"
    assert container["resources"] == {
        "limits": {"cpu": "1", "memory": "1Gi"},
        "requests": {"cpu": "50m", "memory": "64Mi"},
    }


def test_config_accepts_numeric_quantities():
    config = make_config(limits_cpu=2, requests_cpu=0.5)
    assert config.limits_cpu == "2"
    assert config.requests_cpu == "0.5"


@pytest.mark.parametrize(
    "quantity", ["", "ten", "10 m", "128MiB", "-", "-100m", "+1", "128Mi\n", " 1Gi"]
)
def test_config_rejects_invalid_quantity(quantity):
    with pytest.raises(pydantic.ValidationError):
        make_config(limits_memory=quantity)


def test_config_rejects_empty_image():
    with pytest.raises(pydantic.ValidationError):
        make_config(image=" ")


def test_config_is_immutable():
    config = make_config()
    with pytest.raises(pydantic.ValidationError):
        config.image = "something-else"
