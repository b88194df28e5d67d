"""
Program catalog and one-off program purchases.
"""
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.database import get_db
from core.request_guards import valid_program_id, valid_slug
from models import User
from schemas import ProgramOut, envelope
from services import entitlements
from services.entitlements import Target, has_access
from services.payment_gateway import get_payment_gateway

router = APIRouter(prefix="/api/v1/programs", tags=["programs"])


@router.get("/marketplace")
def marketplace(db: Session = Depends(get_db)):
    """Active programs, preview fields only."""
    return envelope([ProgramOut.from_program(p) for p in entitlements.list_marketplace(db)])


@router.get("/my")
def my_programs(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return envelope([ProgramOut.from_program(p) for p in entitlements.list_owned_programs(db, current_user)])


@router.get("/{slug}/access")
def program_access(
    program_slug: str = Depends(valid_slug),
    current_user: User = Depends(get_current_user),
):
    return envelope({"slug": program_slug, "hasAccess": has_access(current_user, Target.program(program_slug))})


@router.post("/{program_id}/purchase")
def purchase_program(
    program_uuid: UUID = Depends(valid_program_id),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    url = entitlements.create_program_checkout(db, current_user, program_uuid, gateway)
    return envelope({"checkoutUrl": url})
