import logging

from fastapi import FastAPI, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings, configure_logging
from .db import get_db, init_db
from .errors import ChatError, Conflict, Unauthenticated, ValidationError
from .gateway import ok, router as chat_router, ws_router
from .models import User
from .schemas import UserCreate, UserOut, LoginIn, Token
from .auth import Principal, get_password_hash, verify_password, create_access_token, get_current_principal

logger = logging.getLogger(__name__)

app = FastAPI(title="Chat Hub Backend")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)
app.include_router(ws_router)


def failure(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message, **extra})


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return failure(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return failure(400, "Validation failed", errors=jsonable_encoder(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return failure(exc.status_code, str(exc.detail))


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning("Integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    if "foreign key" in str(exc.orig).lower():
        return failure(404, "Referenced record does not exist.")
    return failure(Conflict.status_code, Conflict.default_message)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return failure(500, "Something went wrong!")


@app.on_event("startup")
async def on_startup():
    configure_logging()
    await init_db()
    logger.info("Chat hub started")


@app.get("/api/health")
async def health():
    return ok(message="Server is healthy")


# ---------------------- AUTH ----------------------
@app.post("/auth/register", status_code=201)
async def register(payload: UserCreate, db: AsyncSession = Depends(get_db)):
    user = User(email=payload.email, password_hash=get_password_hash(payload.password), name=payload.name)
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict("Email already registered")
    await db.refresh(user)
    return ok({"user": UserOut.model_validate(user)})


@app.post("/auth/login")
async def login(payload: LoginIn, db: AsyncSession = Depends(get_db)):
    res = await db.execute(select(User).where(User.email == payload.email))
    user = res.scalar_one_or_none()
    if not user or not verify_password(payload.password, user.password_hash):
        raise ValidationError("Invalid credentials")
    if not user.is_active:
        raise Unauthenticated("User account is deactivated")
    token = Token(access_token=create_access_token(str(user.id)))
    return ok({**token.model_dump(), "user": UserOut.model_validate(user)})


@app.get("/me")
async def me(principal: Principal = Depends(get_current_principal), db: AsyncSession = Depends(get_db)):
    res = await db.get(User, principal.id)
    return ok({"user": UserOut.model_validate(res)})
