from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from fulfillment.auth import get_current_user, require_admin
from fulfillment.db import get_db
from fulfillment.delivery_settings import schemas
from fulfillment.delivery_settings.service import get_delivery_settings, update_settings
from fulfillment.models import User
from fulfillment.transactions import run_in_transaction


router = APIRouter(prefix="/api/settings", tags=["settings"])


def _to_response(db: Session) -> schemas.DeliverySettingsResponse:
    settings = get_delivery_settings(db)
    return schemas.DeliverySettingsResponse(**asdict(settings))


@router.get("/delivery", response_model=schemas.DeliverySettingsResponse)
def read_delivery_settings(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return _to_response(db)


@router.put("/delivery", response_model=schemas.DeliverySettingsResponse)
def update_delivery_settings(
    payload: schemas.DeliverySettingsUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    run_in_transaction(db, lambda: update_settings(db, payload.values, updated_by=current_user.id))
    return _to_response(db)
