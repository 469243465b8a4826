"""
api/routes/v1/api_keys.py -- API key management.

Routes:
  POST   /api/v1/api-keys                 -- create; plaintext key returned ONCE
  GET    /api/v1/api-keys                 -- list metadata (never the key)
  PATCH  /api/v1/api-keys/{id}/deactivate -- deactivate (owner only)
  DELETE /api/v1/api-keys/{id}            -- delete (owner only)
  GET    /api/v1/api-keys/whoami          -- identity behind an X-API-Key header

Management routes require a bearer session. whoami authenticates with the API
key itself and is the smoke test for machine clients.

IDOR guard: deactivate and delete pass the caller's user id down; a key owned
by someone else answers 404, exactly like a key that does not exist.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import ApiKeyCreate, ApiKeyCreatedResponse, ApiKeyResponse, ApiKeyWhoAmIResponse, MessageResponse
from auth.dependencies import client_info, get_current_principal, require_scope
from auth.models import ApiKeyIdentity, Principal

router = APIRouter()


@router.post("/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
def create_api_key(
    request: Request,
    body: ApiKeyCreate,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    created = request.app.state.api_keys.create(
        principal.user_id,
        name=body.name,
        scopes=[s.value for s in body.scopes],
        expires_at=body.expires_at,
        client=client_info(request),
    )
    resp = JSONResponse(
        status_code=201,
        content=ApiKeyCreatedResponse(
            api_key=created.api_key,
            metadata=ApiKeyResponse.from_api_key(created.metadata),
        ).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/api-keys", response_model=list[ApiKeyResponse])
def list_api_keys(request: Request, principal: Principal = Depends(get_current_principal)) -> list[ApiKeyResponse]:
    return [ApiKeyResponse.from_api_key(k) for k in request.app.state.api_keys.list_keys(principal.user_id)]


@router.get("/api-keys/whoami", response_model=ApiKeyWhoAmIResponse)
def whoami(identity: ApiKeyIdentity = Depends(require_scope("read"))) -> ApiKeyWhoAmIResponse:
    return ApiKeyWhoAmIResponse(
        user_id=identity.user_id,
        email=identity.email,
        scopes=list(identity.scopes),
        key_id=identity.key_id,
    )


@router.patch("/api-keys/{key_id}/deactivate", response_model=ApiKeyResponse)
def deactivate_api_key(
    key_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> ApiKeyResponse:
    key = request.app.state.api_keys.deactivate(principal.user_id, key_id, client=client_info(request))
    return ApiKeyResponse.from_api_key(key)


@router.delete("/api-keys/{key_id}", response_model=MessageResponse)
def delete_api_key(
    key_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    request.app.state.api_keys.delete(principal.user_id, key_id, client=client_info(request))
    return MessageResponse(message="API key deleted.")
