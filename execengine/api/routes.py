from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from execengine.core.errors import ValidationError
from execengine.models.schemas import (
    ExecuteRequest,
    ExecuteResponse,
    HealthResponse,
    HintResponse,
    LanguagesResponse,
    ValidateResponse,
)
from execengine.services.engine import ExecutionEngine


router = APIRouter()


def get_engine(request: Request) -> ExecutionEngine:
    return request.app.state.engine


def _unprocessable(exc: ValidationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"field": exc.field, "message": exc.message},
    )


@router.post(
    "/execute",
    response_model=ExecuteResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_200_OK,
)
def execute(req: ExecuteRequest, engine: ExecutionEngine = Depends(get_engine)) -> ExecuteResponse:
    """Build and run untrusted code inside a fresh sandbox.

    Every well-formed request gets a 200 with exactly one status; only
    malformed requests are rejected with 422.
    """
    try:
        return engine.execute(req)
    except ValidationError as exc:
        raise _unprocessable(exc) from exc


@router.post("/validate", response_model=ValidateResponse, response_model_by_alias=True)
def validate(req: ExecuteRequest, engine: ExecutionEngine = Depends(get_engine)) -> ValidateResponse:
    try:
        return engine.validate(req)
    except ValidationError as exc:
        raise _unprocessable(exc) from exc


@router.post("/hints", response_model=HintResponse, response_model_by_alias=True)
def hints(req: ExecuteRequest, engine: ExecutionEngine = Depends(get_engine)) -> HintResponse:
    try:
        return engine.hint(req)
    except ValidationError as exc:
        raise _unprocessable(exc) from exc


@router.get("/languages", response_model=LanguagesResponse, response_model_by_alias=True)
def languages(engine: ExecutionEngine = Depends(get_engine)) -> LanguagesResponse:
    return engine.languages()


@router.get("/health", response_model=HealthResponse, response_model_by_alias=True)
def health(engine: ExecutionEngine = Depends(get_engine)) -> HealthResponse:
    return engine.health()
