"""Main FastAPI application."""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm

from jira_sync import __version__
from jira_sync.api.v1.api import api_router
from jira_sync.auth import authenticate_operator, create_access_token, get_current_operator
from jira_sync.config import settings
from jira_sync.exceptions import InvalidRunStateError
from jira_sync.schemas.auth import Operator, Token
from jira_sync.scheduler import shutdown_scheduler, start_scheduler
from jira_sync.utils.logging import configure_logging

configure_logging(settings.log_level)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    start_scheduler()
    yield
    shutdown_scheduler()


app = FastAPI(
    title="Jira Worklog Sync",
    description="Incremental synchronization of Jira projects, issues and worklogs",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.post("/token", response_model=Token)
async def login_for_access_token(form_data: Annotated[OAuth2PasswordRequestForm, Depends()]):
    operator = authenticate_operator(form_data.username, form_data.password)
    if not operator:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token = create_access_token(
        data={"sub": operator.username},
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes),
    )
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/operators/me/", response_model=Operator)
async def read_operator_me(current_operator: Annotated[Operator, Depends(get_current_operator)]):
    return current_operator


@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "version": __version__
    }


@app.get("/")
async def root():
    return {
        "message": "Jira Worklog Sync API",
        "version": __version__,
        "docs": "/docs"
    }


app.include_router(api_router, prefix=settings.api_v1_str)


@app.exception_handler(InvalidRunStateError)
async def invalid_run_state_handler(request: Request, exc: InvalidRunStateError):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    log.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000, log_level=settings.log_level.lower())
