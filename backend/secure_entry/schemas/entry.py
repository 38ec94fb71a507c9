"""Pydantic schemas for submission and search payloads."""
from __future__ import annotations

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def _field(*names: str) -> Any:
    return Field(default=None, validation_alias=AliasChoices(*names))


class SubmitRequest(BaseModel):
    """Kiosk submission. Legacy field names are accepted as aliases."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    client_txn_id: Optional[str] = _field("clientTxnId")
    device_id: Optional[str] = _field("deviceId")
    name: Optional[str] = _field("name", "namePassport")
    doc_no: Optional[str] = _field("docNo", "mykadPassport")
    reg_no: Optional[str] = _field("regNo", "regnum")
    contact: Optional[str] = _field("contact")
    remark: Optional[str] = _field("remark")
    unit_no: Optional[str] = _field("unitNo", "unitNumber")
    tower: Optional[str] = _field("tower")
    reason: Optional[str] = _field("reason")
    reason_other: Optional[str] = _field("reasonOther")
    # data:image/...;base64,...; omitted when the subject already has a proof
    image_url: Optional[str] = _field("imageUrl")

    def subject_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude={"client_txn_id", "image_url"})

