"""AdmissionReview wire format helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

ADMISSION_API_VERSION = "admission.k8s.io/v1"
ADMISSION_KIND = "AdmissionReview"


@dataclass(frozen=True)
class AdmissionRequest:
    uid: str
    operation: str
    api_group: str
    kind: str
    namespace: Optional[str]
    name: Optional[str]
    payload: dict[str, Any] = field(repr=False, compare=False)

    @property
    def object(self) -> Optional[dict[str, Any]]:
        obj = self.payload.get("object")
        return obj if isinstance(obj, dict) else None

    @property
    def cluster_scoped(self) -> bool:
        return not self.namespace

    def describe(self) -> str:
        group = self.api_group or "core"
        return f"{self.kind}.{group}/{self.namespace or '-'}/{self.name or '-'}"

    @classmethod
    def from_review(cls, review: Any) -> "AdmissionRequest":
        """Validate the structure of an incoming AdmissionReview and extract its request."""
        if not isinstance(review, dict):
            raise ValueError("AdmissionReview must be a dictionary")

        request = review.get("request")
        if not isinstance(request, dict):
            raise ValueError("AdmissionReview must contain a 'request' dictionary")

        uid = request.get("uid")
        if not isinstance(uid, str) or not uid:
            raise ValueError("AdmissionReview request must contain a 'uid'")

        gvk = request.get("kind")
        if not isinstance(gvk, dict) or not isinstance(gvk.get("kind"), str):
            raise ValueError("AdmissionReview request must contain a 'kind' with group and kind")

        if "object" in request and request["object"] is not None and not isinstance(request["object"], dict):
            raise ValueError("AdmissionReview request 'object' field must be a dictionary")

        return cls(
            uid=uid,
            operation=str(request.get("operation", "")),
            api_group=gvk.get("group") or "",
            kind=gvk["kind"],
            namespace=request.get("namespace") or None,
            name=request.get("name") or None,
            payload=request,
        )


def request_uid(review: Any) -> str:
    """Best-effort uid lookup for reviews that failed validation."""
    if isinstance(review, dict) and isinstance(review.get("request"), dict):
        uid = review["request"].get("uid")
        if isinstance(uid, str):
            return uid
    return ""


def build_response(
    uid: str,
    allowed: bool,
    message: Optional[str] = None,
    warnings: Optional[list[str]] = None,
) -> dict[str, Any]:
    response: dict[str, Any] = {"uid": uid, "allowed": allowed}
    if message is not None:
        response["status"] = {"message": message}
        if not allowed:
            response["status"]["code"] = 403
    if warnings:
        response["warnings"] = list(warnings)
    return {
        "apiVersion": ADMISSION_API_VERSION,
        "kind": ADMISSION_KIND,
        "response": response,
    }
