"""Access to the billing engine owned by the running application."""

from typing import Annotated

from fastapi import Depends, Request

from wayfare.billing.service import BillingEngine


def get_engine(request: Request) -> BillingEngine:
    """Return the engine created by the application lifespan."""
    return request.app.state.engine


EngineDep = Annotated[BillingEngine, Depends(get_engine)]
