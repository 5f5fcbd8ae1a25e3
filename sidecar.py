"""The virtiofs sidecar that exposes the projected AWS token to KubeVirt VMs.

KubeVirt guests cannot read the web identity token that the EKS pod identity
webhook projects into the virt-launcher pod. The sidecar built here runs
virtiofsd against the projected token directory and publishes it on a socket
in the shared `virtiofs-containers` volume, where the VM can mount it.
"""

import logging
import re

from pydantic import ConfigDict, field_validator

from exc import PatchError
from models import (
    BaseModel,
    Capabilities,
    Container,
    Patch,
    PatchAction,
    PatchOp,
    ResourceRequirements,
    SecurityContext,
    VolumeMount,
)

LOG = logging.getLogger(__name__)

SIDECAR_NAME = "virtiofs-aws-iam-token"
SIDECAR_COMMAND = ["/usr/libexec/virtiofsd"]
SIDECAR_USER = 107
SIDECAR_GROUP = 107

VIRTIOFS_VOLUME = "virtiofs-containers"
VIRTIOFS_SOCKET_DIR = "/var/run/kubevirt/virtiofs-containers"
TOKEN_DIR = "/var/run/secrets/eks.amazonaws.com/serviceaccount"

# Always append; other webhooks may add containers to the same pod.
CONTAINERS_APPEND_PATH = "/spec/containers/-"

# https://github.com/kubernetes/apimachinery/blob/master/pkg/api/resource/quantity.go
# Negative quantities are never valid for container resources.
QUANTITY_RE = re.compile(
    r"(\d+(\.\d*)?|\.\d+)"
    r"(Ki|Mi|Gi|Ti|Pi|Ei|n|u|m|k|M|G|T|P|E|[eE][+-]?\d+)?"
)


class SidecarConfig(BaseModel):
    """Static sidecar settings, read once at startup and never modified."""

    model_config = ConfigDict(frozen=True)

    image: str
    requests_cpu: str
    requests_memory: str
    limits_cpu: str
    limits_memory: str

    @field_validator("image")
    @classmethod
    def validate_image(cls, val):
        if not val.strip():
            raise ValueError("image must not be empty")
        return val

    @field_validator(
        "requests_cpu",
        "requests_memory",
        "limits_cpu",
        "limits_memory",
        mode="before",
    )
    @classmethod
    def validate_quantity(cls, val):
        # Values read from the environment may arrive as numbers.
        if isinstance(val, (int, float)) and not isinstance(val, bool):
            val = str(val)
        if not isinstance(val, str) or not QUANTITY_RE.fullmatch(val):
            raise ValueError(f"{val!r} is not a valid resource quantity")
        return val


def sidecar_container(config: SidecarConfig) -> Container:
    return Container(
        name=SIDECAR_NAME,
        image=config.image,
        command=list(SIDECAR_COMMAND),
        args=[
            f"--socket-path={VIRTIOFS_SOCKET_DIR}/aws-iam-token.sock",
            f"--shared-dir={TOKEN_DIR}",
            "--sandbox=none",
            "--cache=auto",
            "--migration-on-error=guest-error",
            "--migration-mode=find-paths",
        ],
        resources=ResourceRequirements(
            limits={"cpu": config.limits_cpu, "memory": config.limits_memory},
            requests={"cpu": config.requests_cpu, "memory": config.requests_memory},
        ),
        volumeMounts=[
            VolumeMount(name=VIRTIOFS_VOLUME, mountPath=VIRTIOFS_SOCKET_DIR),
        ],
        imagePullPolicy="IfNotPresent",
        securityContext=SecurityContext(
            capabilities=Capabilities(drop=["ALL"]),
            runAsUser=SIDECAR_USER,
            runAsGroup=SIDECAR_GROUP,
            runAsNonRoot=True,
            allowPrivilegeEscalation=False,
        ),
    )


def build_patch(role_arn: str, config: SidecarConfig) -> bytes:
    """Return a JSON Patch that appends the virtiofs sidecar to a pod.

    The sidecar reads credentials from the projected token volume, so the
    role itself does not appear in the patch. Identical configuration always
    produces byte-identical output.
    """

    LOG.debug("building virtiofs sidecar patch for role %s", role_arn)

    try:
        container = sidecar_container(config)
        patch = Patch(
            [
                PatchAction(
                    op=PatchOp.ADD,
                    path=CONTAINERS_APPEND_PATH,
                    value=container.model_dump(exclude_none=True),
                )
            ]
        )
        return patch.model_dump_json().encode()
    except (ValueError, TypeError) as err:
        raise PatchError(str(err)) from err
