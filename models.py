import base64
from typing import Any, Literal
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    RootModel,
    model_validator,
    field_validator,
)
from enum import StrEnum


class ApiVersion(StrEnum):
    V1 = "admission.k8s.io/v1"


class Operation(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class PatchType(StrEnum):
    JSONPatch = "JSONPatch"


class PatchOp(StrEnum):
    ADD = "add"


class PatchAction(BaseModel):
    op: PatchOp
    path: str
    value: Any


# https://jsonpatch.com/
Patch = RootModel[list[PatchAction]]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#status-v1-meta
class AdmissionReviewStatus(BaseModel):
    message: str


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionResponse
class AdmissionResponse(BaseModel):
    uid: str
    allowed: bool
    status: AdmissionReviewStatus | None = None
    patchType: PatchType | None = None
    patch: str | None = None

    @field_validator("patch", mode="before")
    @classmethod
    def validate_patch(cls, val):
        if isinstance(val, (str, bytes)):
            # Make sure the base64 string contains valid data.
            Patch.model_validate_json(base64.b64decode(val))
        return val

    @model_validator(mode="after")
    def validate_model(self):
        if self.patch and not self.patchType:
            raise ValueError("missing patchType field")
        if self.patchType and not self.patch:
            raise ValueError(f"patchType is {self.patchType} but there is no patch")
        if self.patch and not self.allowed:
            raise ValueError("a denied request cannot carry a patch")
        if self.status and self.allowed:
            raise ValueError("status message is only valid on a denied request")

        return self


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#groupversionkind-v1-meta
class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str = ""


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionRequest
class AdmissionRequest(BaseModel):
    uid: str = Field(min_length=1)
    kind: GroupVersionKind = GroupVersionKind()
    name: str | None = None
    namespace: str | None = None
    operation: Operation = Operation.CREATE
    object: Any = None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionReview
class AdmissionReview(BaseModel):
    apiVersion: Literal[ApiVersion.V1] = ApiVersion.V1
    kind: Literal["AdmissionReview"] = "AdmissionReview"
    request: AdmissionRequest | None = None
    response: AdmissionResponse | None = None

    @model_validator(mode="after")
    def validate_model(self):
        if not (self.request or self.response):
            raise ValueError("must contain a request or a response")

        return self


class Decision(BaseModel):
    """The outcome of inspecting a single admission request.

    A decision either allows the request (optionally with a JSON Patch to
    apply) or denies it with a message explaining why.
    """

    model_config = ConfigDict(frozen=True)

    allowed: bool
    patch: bytes | None = None
    message: str | None = None

    @model_validator(mode="after")
    def validate_model(self):
        if self.patch is not None and not self.allowed:
            raise ValueError("a denied request cannot carry a patch")
        if self.message is not None and self.allowed:
            raise ValueError("only denied requests carry a message")
        if not self.allowed and not self.message:
            raise ValueError("a denied request must explain why")

        return self


class Metadata(BaseModel):
    name: str | None = None
    namespace: str | None = None
    labels: dict[str, str] = {}
    annotations: dict[str, str] = {}

    @field_validator("labels", "annotations", mode="before")
    @classmethod
    def validate_mapping(cls, val):
        # The API server omits empty maps, but clients sometimes send null.
        return {} if val is None else val


class PodSpec(BaseModel):
    serviceAccountName: str | None = None
    containers: list[dict[str, Any]] = []


class Pod(BaseModel):
    metadata: Metadata = Metadata()
    spec: PodSpec = PodSpec()


class ServiceAccount(BaseModel):
    metadata: Metadata = Metadata()


# The container models below only describe the fields the webhook writes.
# Field order follows the Kubernetes API types so that serialized patches
# match what other Kubernetes clients produce.


class Capabilities(BaseModel):
    drop: list[str] | None = None


class SecurityContext(BaseModel):
    capabilities: Capabilities | None = None
    runAsUser: int | None = None
    runAsGroup: int | None = None
    runAsNonRoot: bool | None = None
    allowPrivilegeEscalation: bool | None = None


class ResourceRequirements(BaseModel):
    limits: dict[str, str] | None = None
    requests: dict[str, str] | None = None


class VolumeMount(BaseModel):
    name: str
    mountPath: str


class Container(BaseModel):
    name: str
    image: str
    command: list[str] | None = None
    args: list[str] | None = None
    resources: ResourceRequirements | None = None
    volumeMounts: list[VolumeMount] | None = None
    imagePullPolicy: str | None = None
    securityContext: SecurityContext | None = None
