"""
Offline queue schemas.

A queued operation is a durable record of user intent that the server has not
confirmed yet.
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic.alias_generators import to_camel

from minex.app.core.constants import LOCAL_TOKEN_PREFIX
from minex.app.models.trip_enums import OperationAction
from minex.app.schemas.trip import StartTripRequest

# Keys older clients stored flat on the record instead of under "payload"
LEGACY_PAYLOAD_KEYS = (
    "tripToken",
    "vehicleId",
    "destination",
    "material",
    "departureAt",
    "arrivalAt",
    "weightKg",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueuedOperation(BaseModel):
    """Pending START / COMPLETE / CLOSE_FIELD intent."""
    op_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    action: Optional[OperationAction] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    completion_pending: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    attempts: int = 0
    last_error: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "allow"

    @model_validator(mode="before")
    @classmethod
    def lift_legacy_record(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if "payload" in data:
            return data

        # Flat record written by an older client
        digest = hashlib.sha1(json.dumps(data, sort_keys=True, default=str).encode()).hexdigest()
        data = dict(data)
        data["payload"] = {k: data.pop(k) for k in LEGACY_PAYLOAD_KEYS if k in data}
        if "opId" not in data and "op_id" not in data:
            # Stable across reads so the record is recognised on every pass
            data["opId"] = f"legacy-{digest[:16]}"
        return data

    @property
    def kind(self) -> Optional[OperationAction]:
        """START / COMPLETE / CLOSE_FIELD, or None for records with no marker."""
        if self.action is not None:
            return self.action
        if self.completion_pending:
            return OperationAction.COMPLETE
        return None

    @property
    def trip_token(self) -> Optional[str]:
        token = self.payload.get("tripToken") or self.payload.get("localToken")
        return token.strip() if isinstance(token, str) else None

    @property
    def local_token(self) -> str:
        """Token the provisional trip of a START is shown under until the server confirms it."""
        token = self.payload.get("localToken") or self.payload.get("tripToken")
        if isinstance(token, str) and token.strip():
            return token.strip()
        return f"{LOCAL_TOKEN_PREFIX}{self.op_id[-12:].upper()}"

    def to_storage(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def start(cls, request: StartTripRequest, departure_at: datetime, local_token: str) -> "QueuedOperation":
        payload = request.to_wire()
        payload["departureAt"] = departure_at.isoformat()
        payload["localToken"] = local_token
        return cls(action=OperationAction.START, payload=payload)

    @classmethod
    def complete(cls, trip_token: str, weight_kg: int, arrival_at: datetime) -> "QueuedOperation":
        return cls(
            action=OperationAction.COMPLETE,
            completion_pending=True,
            payload={
                "tripToken": trip_token,
                "weightKg": weight_kg,
                "arrivalAt": arrival_at.isoformat(),
            },
        )

    @classmethod
    def close_field(cls, trip_token: str) -> "QueuedOperation":
        return cls(action=OperationAction.CLOSE_FIELD, payload={"tripToken": trip_token})
