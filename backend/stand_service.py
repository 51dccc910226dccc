import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models
import schemas
from database import page_bounds
from errors import NotFoundError, StaffAlreadyAssignedError
from security import hash_pin, verify_pin

logger = logging.getLogger(__name__)


class StandRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(self, stand: models.Stand) -> None:
        self.db.add(stand)
        self.db.commit()
        self.db.refresh(stand)

    def get_by_id(self, stand_id: str) -> models.Stand | None:
        return self.db.query(models.Stand).filter(models.Stand.id == stand_id).first()

    def list_by_festival(self, festival_id: str, offset: int, limit: int) -> tuple[list[models.Stand], int]:
        query = self.db.query(models.Stand).filter(models.Stand.festival_id == festival_id)
        total = query.count()
        stands = query.order_by(models.Stand.name.asc()).offset(offset).limit(limit).all()
        return stands, total

    def list_by_category(self, festival_id: str, category: str) -> list[models.Stand]:
        return (
            self.db.query(models.Stand)
            .filter(models.Stand.festival_id == festival_id, models.Stand.category == category)
            .order_by(models.Stand.name.asc())
            .all()
        )

    def update(self, stand: models.Stand) -> None:
        self.db.add(stand)
        self.db.commit()
        self.db.refresh(stand)

    def delete(self, stand_id: str) -> None:
        self.db.query(models.StandStaff).filter(models.StandStaff.stand_id == stand_id).delete()
        self.db.query(models.Stand).filter(models.Stand.id == stand_id).delete()
        self.db.commit()

    def assign_staff(self, staff: models.StandStaff) -> None:
        self.db.add(staff)
        try:
            self.db.commit()
        except IntegrityError as exc:
            # lost the race against a concurrent assignment of the same user
            self.db.rollback()
            raise StaffAlreadyAssignedError() from exc
        self.db.refresh(staff)

    def get_staff_member(self, stand_id: str, user_id: str) -> models.StandStaff | None:
        return (
            self.db.query(models.StandStaff)
            .filter(models.StandStaff.stand_id == stand_id, models.StandStaff.user_id == user_id)
            .first()
        )

    def get_staff_by_stand(self, stand_id: str) -> list[models.StandStaff]:
        return (
            self.db.query(models.StandStaff)
            .filter(models.StandStaff.stand_id == stand_id)
            .order_by(models.StandStaff.created_at.asc())
            .all()
        )

    def get_staff_by_user(self, user_id: str) -> list[models.StandStaff]:
        return self.db.query(models.StandStaff).filter(models.StandStaff.user_id == user_id).all()

    def remove_staff(self, staff: models.StandStaff) -> None:
        self.db.delete(staff)
        self.db.commit()


class StandService:
    """Stand and stand staff management for a festival."""

    def __init__(self, repo: StandRepository):
        self.repo = repo

    def create(self, festival_id: str, req: schemas.StandCreate) -> models.Stand:
        settings = req.settings or schemas.StandSettings()
        stand = models.Stand(
            id=models.new_id(),
            festival_id=festival_id,
            name=req.name,
            description=req.description,
            category=req.category,
            location=req.location,
            image_url=req.image_url,
            status="ACTIVE",
            settings=settings.model_dump(),
        )
        self.repo.create(stand)
        logger.info("Stand created id=%s festival_id=%s category=%s", stand.id, festival_id, stand.category)
        return stand

    def get_by_id(self, stand_id: str) -> models.Stand:
        stand = self.repo.get_by_id(stand_id)
        if stand is None:
            raise NotFoundError("Stand not found")
        return stand

    def list_for_festival(self, festival_id: str, page: int, per_page: int) -> tuple[list[models.Stand], int]:
        _, limit, offset = page_bounds(page, per_page)
        return self.repo.list_by_festival(festival_id, offset, limit)

    def list_by_category(self, festival_id: str, category: str) -> list[models.Stand]:
        return self.repo.list_by_category(festival_id, category)

    def update(self, stand_id: str, req: schemas.StandUpdate) -> models.Stand:
        stand = self.get_by_id(stand_id)

        changes = req.model_dump(exclude_unset=True, exclude_none=True)
        settings_changes = changes.pop("settings", None)
        for field, value in changes.items():
            setattr(stand, field, value)
        if settings_changes:
            merged = dict(stand.settings or schemas.StandSettings().model_dump())
            merged.update(settings_changes)
            # reassign so the JSON column is flagged dirty
            stand.settings = merged

        self.repo.update(stand)
        return stand

    def delete(self, stand_id: str) -> None:
        stand = self.get_by_id(stand_id)
        self.repo.delete(stand.id)
        logger.info("Stand deleted id=%s", stand_id)

    def activate(self, stand_id: str) -> models.Stand:
        return self.update(stand_id, schemas.StandUpdate(status="ACTIVE"))

    def deactivate(self, stand_id: str) -> models.Stand:
        return self.update(stand_id, schemas.StandUpdate(status="INACTIVE"))

    def assign_staff(self, stand_id: str, req: schemas.AssignStaffRequest) -> models.StandStaff:
        stand = self.repo.get_by_id(stand_id)
        if stand is None:
            raise NotFoundError("Stand not found")

        if self.repo.get_staff_member(stand_id, req.user_id) is not None:
            raise StaffAlreadyAssignedError()

        staff = models.StandStaff(
            id=models.new_id(),
            stand_id=stand_id,
            user_id=req.user_id,
            role=req.role,
            pin=hash_pin(req.pin) if req.pin else "",
        )
        self.repo.assign_staff(staff)
        logger.info("Staff assigned stand_id=%s user_id=%s role=%s", stand_id, req.user_id, req.role)
        return staff

    def remove_staff(self, stand_id: str, user_id: str) -> None:
        staff = self.repo.get_staff_member(stand_id, user_id)
        if staff is None:
            raise NotFoundError("Staff assignment not found")
        self.repo.remove_staff(staff)
        logger.info("Staff removed stand_id=%s user_id=%s", stand_id, user_id)

    def get_staff(self, stand_id: str) -> list[models.StandStaff]:
        return self.repo.get_staff_by_stand(stand_id)

    def get_user_stands(self, user_id: str) -> list[models.StandStaff]:
        return self.repo.get_staff_by_user(user_id)

    def validate_staff_pin(self, stand_id: str, user_id: str, pin: str) -> bool:
        staff = self.repo.get_staff_member(stand_id, user_id)
        if staff is None:
            raise NotFoundError("Staff assignment not found")
        if not staff.pin:
            return True
        return verify_pin(pin, staff.pin)
