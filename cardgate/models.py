from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Optional


class _Camel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateCardRequest(_Camel):
    owner: str
    ttl_seconds: Optional[int] = Field(default=None, alias="ttlSeconds")
    user_role: Optional[str] = Field(default=None, alias="userRole")
    generate_qr: bool = Field(default=False, alias="generateQr")


# Fields are deliberately loose: a malformed proof must reach the
# verifier and be denied and audited, not bounced by schema validation.
class VerifyRequest(_Camel):
    card_id: Any = Field(default=None, alias="cardId")
    ctr: Any = None
    tag: Any = None


class QrVerifyRequest(_Camel):
    qr_code: Any = Field(default=None, alias="qrCode")


class AttestationVerifyRequest(BaseModel):
    challenge: Optional[str] = None
    signature: Optional[str] = None
