"""
api/routes/v1/profile.py -- Profile, password change, and account deletion.

Routes (all require auth):
  GET    /api/v1/profile                  -- decrypted profile
  PATCH  /api/v1/profile                  -- partial update; PII encrypted at rest
  POST   /api/v1/profile/change-password  -- revokes every session of the user
  DELETE /api/v1/profile                  -- delete account (password if one is set)

All handlers are sync `def`: change-password and delete run bcrypt, and the
profile reads decrypt AES-GCM envelopes.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import ChangePasswordRequest, DeleteAccountRequest, MessageResponse, ProfileResponse, ProfileUpdate, UserSummary
from auth.dependencies import client_info, get_current_principal
from auth.models import Principal
from auth.profile import ProfileView

router = APIRouter()


def _to_response(view: ProfileView) -> ProfileResponse:
    return ProfileResponse(
        user=UserSummary.from_user(view.user),
        phone_number=view.phone_number,
        address=view.address,
        date_of_birth=view.date_of_birth,
        bio=view.bio,
        website=view.website,
        timezone=view.timezone,
        language=view.language,
    )


@router.get("/profile", response_model=ProfileResponse)
def get_profile(request: Request, principal: Principal = Depends(get_current_principal)) -> ProfileResponse:
    return _to_response(request.app.state.profiles.get_profile(principal.user_id))


@router.patch("/profile", response_model=ProfileResponse)
def update_profile(
    request: Request,
    body: ProfileUpdate,
    principal: Principal = Depends(get_current_principal),
) -> ProfileResponse:
    changes = body.model_dump(exclude_unset=True, mode="json")
    view = request.app.state.profiles.update_profile(principal.user_id, changes, client=client_info(request))
    return _to_response(view)


@router.post("/profile/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    request.app.state.profiles.change_password(
        principal.user_id, body.current_password, body.new_password, client=client_info(request)
    )
    return MessageResponse(message="Password changed. Please sign in again.")


@router.delete("/profile", response_model=MessageResponse)
def delete_account(
    request: Request,
    body: DeleteAccountRequest | None = None,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    password = body.password if body else None
    request.app.state.profiles.delete_account(principal.user_id, password=password, client=client_info(request))
    return MessageResponse(message="Account deleted.")
