"""Model selection endpoints."""

from __future__ import annotations

from fastapi import APIRouter

from threadrelay.bridge.deps import Service
from threadrelay.bridge.models.api import ModelListResponse, ModelSwitchRequest

router = APIRouter(prefix="/models", tags=["models"])


@router.get("", response_model=ModelListResponse)
async def handle_list_models(service: Service) -> ModelListResponse:
    return ModelListResponse(current=service.current_model, available=service.models)


@router.put("/current", response_model=ModelListResponse)
async def handle_switch_model(body: ModelSwitchRequest, service: Service) -> ModelListResponse:
    service.set_model(body.model)
    return ModelListResponse(current=service.current_model, available=service.models)
