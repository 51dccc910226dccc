import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import config
import models
import schemas
import stand_routes
import wallet_routes
import webhook_routes
from database import engine, get_db
from errors import AppError, NotFoundError
from security import get_admin_actor, get_current_actor
from webhook_service import close_webhook_sender

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

models.Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    close_webhook_sender()


app = FastAPI(title="Festival Cashless API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


app.include_router(stand_routes.router, prefix="/api/v1")
app.include_router(wallet_routes.router, prefix="/api/v1")
app.include_router(webhook_routes.router, prefix="/api/v1")


@app.get("/")
def read_root():
    return {"message": "Welcome to the Festival Cashless API"}


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/api/v1/festivals", response_model=schemas.Festival, status_code=201)
def create_festival(
    festival: schemas.FestivalCreate,
    db: Session = Depends(get_db),
    actor: dict = Depends(get_admin_actor),
):
    db_festival = models.Festival(id=models.new_id(), **festival.model_dump())
    db.add(db_festival)
    db.commit()
    db.refresh(db_festival)
    logger.info("Festival created id=%s by user_id=%s", db_festival.id, actor["user_id"])
    return db_festival


@app.get("/api/v1/festivals", response_model=List[schemas.Festival])
def list_festivals(db: Session = Depends(get_db), actor: dict = Depends(get_current_actor)):
    return db.query(models.Festival).order_by(models.Festival.created_at.desc()).all()


@app.get("/api/v1/festivals/{festival_id}", response_model=schemas.Festival)
def get_festival(festival_id: str, db: Session = Depends(get_db), actor: dict = Depends(get_current_actor)):
    festival = db.query(models.Festival).filter(models.Festival.id == festival_id).first()
    if festival is None:
        raise NotFoundError("Festival not found")
    return festival
