from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db, page_bounds
from errors import NotFoundError
from security import get_current_actor, get_manager_actor, get_staff_actor
from stand_service import StandRepository, StandService

router = APIRouter(tags=["stands"])


def get_stand_service(db: Session = Depends(get_db)) -> StandService:
    return StandService(StandRepository(db))


def festival_stand(service: StandService, festival_id: str, stand_id: str) -> models.Stand:
    stand = service.get_by_id(stand_id)
    if stand.festival_id != festival_id:
        raise NotFoundError("Stand not found")
    return stand


@router.post("/festivals/{festival_id}/stands", response_model=schemas.Stand, status_code=201)
def create_stand(
    festival_id: str,
    req: schemas.StandCreate,
    db: Session = Depends(get_db),
    service: StandService = Depends(get_stand_service),
    actor: dict = Depends(get_manager_actor),
):
    if db.query(models.Festival).filter(models.Festival.id == festival_id).first() is None:
        raise NotFoundError("Festival not found")
    return service.create(festival_id, req)


@router.get("/festivals/{festival_id}/stands", response_model=schemas.StandList, response_model_exclude_none=True)
def list_stands(
    festival_id: str,
    page: int = 1,
    per_page: int = 20,
    category: Optional[schemas.StandCategory] = Query(default=None),
    service: StandService = Depends(get_stand_service),
    actor: dict = Depends(get_current_actor),
):
    if category:
        return {"data": service.list_by_category(festival_id, category)}

    page, per_page, _ = page_bounds(page, per_page)
    stands, total = service.list_for_festival(festival_id, page, per_page)
    return {"data": stands, "meta": {"total": total, "page": page, "per_page": per_page}}


@router.get("/festivals/{festival_id}/stands/{stand_id}", response_model=schemas.Stand)
def get_stand(
    festival_id: str,
    stand_id: str,
    service: StandService = Depends(get_stand_service),
    actor: dict = Depends(get_current_actor),
):
    return festival_stand(service, festival_id, stand_id)


@router.patch("/festivals/{festival_id}/stands/{stand_id}", response_model=schemas.Stand)
def update_stand(
    festival_id: str,
    stand_id: str,
    req: schemas.StandUpdate,
    service: StandService = Depends(get_stand_service),
    actor: dict = Depends(get_manager_actor),
):
    festival_stand(service, festival_id, stand_id)
    return service.update(stand_id, req)


@router.delete("/festivals/{festival_id}/stands/{stand_id}", status_code=204)
def delete_stand(
    festival_id: str,
    stand_id: str,
    service: StandService = Depends(get_stand_service),
    actor: dict = Depends(get_manager_actor),
):
    festival_stand(service, festival_id, stand_id)
    service.delete(stand_id)
    return Response(status_code=204)


@router.post("/festivals/{festival_id}/stands/{stand_id}/activate", response_model=schemas.Stand)
def activate_stand(
    festival_id: str,
    stand_id: str,
    service: StandService = Depends(get_stand_service),
    actor: dict = Depends(get_manager_actor),
):
    festival_stand(service, festival_id, stand_id)
    return service.activate(stand_id)


@router.post("/festivals/{festival_id}/stands/{stand_id}/deactivate", response_model=schemas.Stand)
def deactivate_stand(
    festival_id: str,
    stand_id: str,
    service: StandService = Depends(get_stand_service),
    actor: dict = Depends(get_manager_actor),
):
    festival_stand(service, festival_id, stand_id)
    return service.deactivate(stand_id)


@router.get("/festivals/{festival_id}/stands/{stand_id}/staff", response_model=List[schemas.StandStaff])
def list_stand_staff(
    festival_id: str,
    stand_id: str,
    service: StandService = Depends(get_stand_service),
    actor: dict = Depends(get_staff_actor),
):
    festival_stand(service, festival_id, stand_id)
    return service.get_staff(stand_id)


@router.post("/festivals/{festival_id}/stands/{stand_id}/staff", response_model=schemas.StandStaff, status_code=201)
def assign_stand_staff(
    festival_id: str,
    stand_id: str,
    req: schemas.AssignStaffRequest,
    service: StandService = Depends(get_stand_service),
    actor: dict = Depends(get_manager_actor),
):
    festival_stand(service, festival_id, stand_id)
    return service.assign_staff(stand_id, req)


@router.delete("/festivals/{festival_id}/stands/{stand_id}/staff/{user_id}", status_code=204)
def remove_stand_staff(
    festival_id: str,
    stand_id: str,
    user_id: str,
    service: StandService = Depends(get_stand_service),
    actor: dict = Depends(get_manager_actor),
):
    festival_stand(service, festival_id, stand_id)
    service.remove_staff(stand_id, user_id)
    return Response(status_code=204)


@router.post(
    "/festivals/{festival_id}/stands/{stand_id}/staff/{user_id}/validate-pin",
    response_model=schemas.ValidatePinResponse,
)
def validate_staff_pin(
    festival_id: str,
    stand_id: str,
    user_id: str,
    req: schemas.ValidatePinRequest,
    service: StandService = Depends(get_stand_service),
    actor: dict = Depends(get_staff_actor),
):
    festival_stand(service, festival_id, stand_id)
    return {"valid": service.validate_staff_pin(stand_id, user_id, req.pin)}


@router.get("/me/stands", response_model=List[schemas.StandStaff])
def my_stands(
    service: StandService = Depends(get_stand_service),
    actor: dict = Depends(get_current_actor),
):
    return service.get_user_stands(actor["user_id"])
