"""Wire models for the x402 payment protocol.

Field names on the wire are camelCase; Python attributes are snake_case with
aliases, so ``model_dump(by_alias=True)`` always produces the wire form.
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentRequirements(BaseModel):
    """What a client must pay to access a resource. Issued per request."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    scheme: str = 'exact'
    network: str
    max_amount_required: str = Field(alias='maxAmountRequired')
    resource: str
    description: str = ''
    mime_type: str = Field('application/json', alias='mimeType')
    pay_to: str = Field(alias='payTo')
    max_timeout_seconds: int = Field(300, alias='maxTimeoutSeconds')
    asset: str


class PaymentRequiredResponse(BaseModel):
    """Body of a 402 challenge."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    x402_version: int = Field(alias='x402Version')
    accepts: List[PaymentRequirements]
    error: Optional[str] = None

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class TransferPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    signature: str
    from_: str = Field('', alias='from')
    to: str = ''
    amount: str = ''
    mint: str = ''


class PaymentPayload(BaseModel):
    """Decoded content of the X-Payment header."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    x402_version: int = Field(alias='x402Version')
    scheme: str
    network: str = ''
    payload: TransferPayload


class DecodeError(BaseModel):
    """Returned instead of a PaymentPayload when a header cannot be decoded."""
    model_config = ConfigDict(frozen=True)

    reason: str


class VerificationResult(BaseModel):
    """Outcome of one verification attempt."""
    model_config = ConfigDict(frozen=True)

    success: bool
    tx_reference: str = ''
    network_id: str = ''
    error: Optional[str] = None
    error_code: Optional[str] = None
