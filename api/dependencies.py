"""Shared helpers for the API routers."""
from typing import Any, Dict, Union

from fastapi import Request
from fastapi.responses import JSONResponse

from errors import ErrorCodes
from marketplace import Marketplace, PurchaseOutcome


def get_marketplace(request: Request) -> Marketplace:
    """Marketplace built at startup (or injected by create_app)."""
    return request.app.state.marketplace


def purchase_response(outcome: PurchaseOutcome) -> Union[JSONResponse, Dict[str, Any]]:
    """402 challenge body or the completed purchase."""
    if outcome.status == 402 and outcome.payment_required is not None:
        body = outcome.payment_required.to_wire()
        body['error'] = ErrorCodes.PAYMENT_REQUIRED
        return JSONResponse(status_code=402, content=body)
    return outcome.model_dump(mode='json', exclude_none=True, exclude={'payment_required'})
