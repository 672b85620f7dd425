from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Literal, Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Header,
    HTTPException,
    Path,
    Query,
    UploadFile,
)
from fastapi.responses import FileResponse

from tasknest.api.schemas import (
    AccountSummary,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    ProfileCreateRequest,
    ProfileResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    RegisterResponse,
    ResendOtpRequest,
    ResetPasswordRequest,
    SessionCheckResponse,
    TaskCreateRequest,
    TaskListCreateRequest,
    TaskListResponse,
    TaskListUpdateRequest,
    TaskResponse,
    TaskUpdateRequest,
    VerifyOtpRequest,
)
from tasknest.logging import get_logger
from tasknest.service.auth import AuthContext
from tasknest.service.errors import AuthenticationError
from tasknest.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

_FORGOT_PASSWORD_MESSAGE = "If an account exists for that email, a reset code has been sent."


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "success": False,
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid or expired token", status_code=401)
    return ctx


# auth
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, background_tasks: BackgroundTasks):
    """Create an account, its profile and its default task list.

    A six-digit verification code is emailed after the response is sent;
    delivery problems are logged and never change the outcome.

    Raises:
        400: Missing or malformed fields, or the email is already registered
    """
    runtime = get_runtime()
    registration = await asyncio.to_thread(
        runtime.accounts.register, body.name, body.email, body.password
    )
    background_tasks.add_task(runtime.accounts.dispatch_verification, registration)
    message = "Registration successful. Check your email for the verification code."
    return Envelope(
        success=True,
        data=RegisterResponse(
            account_id=registration.account.id,
            email=registration.account.email,
            message=message,
        ),
        message=message,
    )


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyOtpRequest):
    """Confirm the email address with the code sent at registration.

    Raises:
        400: Account already verified
        401: Code wrong or expired
        404: No account for the email
    """
    runtime = get_runtime()
    account = await asyncio.to_thread(runtime.verification.verify_code, body.email, body.otp)
    return Envelope(
        success=True,
        data={"account_id": account.id, "email": account.email, "is_verified": True},
        message="Email verified successfully.",
    )


@router.post("/auth/resend-otp", response_model=Envelope, tags=["auth"])
async def resend_otp(body: ResendOtpRequest, background_tasks: BackgroundTasks):
    """Send a fresh verification code, replacing the outstanding one.

    Raises:
        400: Account already verified
        404: No account for the email
    """
    runtime = get_runtime()
    issued = await asyncio.to_thread(runtime.verification.resend_verification, body.email)
    background_tasks.add_task(runtime.verification.dispatch, issued)
    return Envelope(
        success=True,
        data={"sent": True, "expires_at": issued.expires_at},
        message="A new verification code has been sent to your email.",
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for a bearer token.

    Raises:
        401: Unknown email or wrong password (indistinguishable)
        403: Email not verified yet
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.auth.login, body.email, body.password)
    profile = runtime.store.get_profile(result.account.id)
    return Envelope(
        success=True,
        data=LoginResponse(
            token=result.token,
            expires_at=result.expires_at,
            user=AccountSummary(
                id=result.account.id,
                email=result.account.email,
                full_name=profile.full_name if profile else None,
                is_verified=result.account.is_verified,
            ),
        ),
        message="Login successful.",
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, background_tasks: BackgroundTasks):
    """Send a password reset code.

    The response is the same whether or not the email belongs to an account.
    """
    runtime = get_runtime()
    issued = await asyncio.to_thread(runtime.verification.request_password_reset, body.email)
    if issued:
        background_tasks.add_task(runtime.verification.dispatch, issued)
    return Envelope(success=True, data={"sent": True}, message=_FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    """Set a new password using a reset code. Existing tokens stop working.

    Raises:
        400: New password does not meet the policy
        401: Code wrong, expired or not issued for a reset
    """
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.verification.reset_password, body.email, body.otp, body.new_password
    )
    return Envelope(
        success=True,
        data={"reset": True},
        message="Password reset successful. Please log in with your new password.",
    )


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    """Change the caller's password. Every token issued so far, including
    the one used for this request, is invalidated.

    Raises:
        400: New password does not meet the policy
        401: Current password incorrect
    """
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.auth.change_password,
        principal.user_id,
        body.old_password,
        body.new_password,
    )
    return Envelope(
        success=True,
        data={"changed": True},
        message="Password changed. Please log in again.",
    )


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify_session(principal: AuthContext = Depends(get_user)):
    """Check that the bearer token is still valid."""
    return Envelope(
        success=True,
        data=SessionCheckResponse(
            valid=True,
            user_id=principal.user_id,
            email=principal.email,
            expires_at=principal.expires_at,
        ),
    )


# profile
@router.get("/profile", response_model=Envelope, tags=["profile"])
async def get_profile(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    profile = runtime.profiles.get_profile(principal.user_id)
    return Envelope(success=True, data=ProfileResponse.model_validate(profile))


@router.post("/profile", response_model=Envelope, status_code=201, tags=["profile"])
async def create_profile(
    body: ProfileCreateRequest, principal: AuthContext = Depends(get_user)
):
    """Recreate a deleted profile, together with the default task list if
    that is missing as well.

    Raises:
        400: The caller already has a profile
    """
    runtime = get_runtime()
    account = runtime.store.get_account(principal.user_id)
    if not account:
        raise AuthenticationError("invalid session")
    profile = runtime.accounts.recreate_profile(
        account, body.full_name, bio=body.bio, avatar_url=body.avatar_url
    )
    return Envelope(success=True, data=ProfileResponse.model_validate(profile))


@router.put("/profile", response_model=Envelope, tags=["profile"])
async def update_profile(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    updates = {
        key: value
        for key, value in body.model_dump(exclude_unset=True).items()
        if value is not None or key == "avatar_url"
    }
    profile = runtime.profiles.update_profile(principal.user_id, updates)
    return Envelope(success=True, data=ProfileResponse.model_validate(profile))


@router.delete("/profile", response_model=Envelope, tags=["profile"])
async def delete_profile(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.profiles.delete_profile(principal.user_id)
    return Envelope(success=True, data={"deleted": True}, message="Profile deleted.")


@router.post("/profile/photo", response_model=Envelope, tags=["profile"])
async def upload_profile_photo(
    file: UploadFile = File(...), principal: AuthContext = Depends(get_user)
):
    """Upload a JPEG, PNG, GIF or WebP profile photo.

    Raises:
        400: Unsupported type, empty file or over the size limit
        404: The caller has no profile
    """
    runtime = get_runtime()
    # Read one byte past the limit so oversize uploads are detected without buffering them whole
    content = await file.read(runtime.settings.max_avatar_bytes + 1)
    profile = await asyncio.to_thread(
        runtime.profiles.upload_photo, principal.user_id, content, file.content_type
    )
    return Envelope(success=True, data=ProfileResponse.model_validate(profile))


@router.get("/profile/{user_id}/photo", tags=["profile"])
async def get_profile_photo(user_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    path, media_type = runtime.profiles.photo_path(user_id)
    return FileResponse(path, media_type=media_type)


# tasks
@router.get("/task", response_model=Envelope, tags=["tasks"])
async def list_tasks(
    status: Optional[Literal["pending", "completed"]] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    principal: AuthContext = Depends(get_user),
):
    """List the caller's tasks ordered by due date (undated last).

    ``start_date`` and ``end_date`` filter on the due date and only apply
    when both are given.
    """
    runtime = get_runtime()
    tasks = runtime.tasks.list_tasks(
        principal.user_id, status=status, start_date=start_date, end_date=end_date
    )
    return Envelope(
        success=True,
        data={
            "items": [TaskResponse.model_validate(task) for task in tasks],
            "count": len(tasks),
        },
    )


@router.post("/task", response_model=Envelope, status_code=201, tags=["tasks"])
async def create_task(body: TaskCreateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    task = runtime.tasks.create_task(principal.user_id, body.to_fields())
    return Envelope(success=True, data=TaskResponse.model_validate(task))


@router.put("/task/{task_id}", response_model=Envelope, tags=["tasks"])
async def update_task(
    body: TaskUpdateRequest,
    task_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    task = runtime.tasks.update_task(principal.user_id, task_id, body.to_fields())
    return Envelope(success=True, data=TaskResponse.model_validate(task))


@router.delete("/task/{task_id}", response_model=Envelope, tags=["tasks"])
async def delete_task(
    task_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    runtime.tasks.delete_task(principal.user_id, task_id)
    return Envelope(success=True, data={"deleted": True}, message="Task deleted.")


# task lists
@router.get("/taskList", response_model=Envelope, tags=["task-lists"])
async def list_task_lists(principal: AuthContext = Depends(get_user)):
    """List the caller's task lists, newest first."""
    runtime = get_runtime()
    task_lists = runtime.tasks.list_task_lists(principal.user_id)
    return Envelope(
        success=True,
        data={
            "items": [TaskListResponse.model_validate(tl) for tl in task_lists],
            "count": len(task_lists),
        },
    )


@router.post("/taskList", response_model=Envelope, status_code=201, tags=["task-lists"])
async def create_task_list(
    body: TaskListCreateRequest, principal: AuthContext = Depends(get_user)
):
    """Create a list. ``is_default`` moves the default flag to the new list."""
    runtime = get_runtime()
    task_list = runtime.tasks.create_task_list(
        principal.user_id, body.title, is_default=body.is_default
    )
    return Envelope(success=True, data=TaskListResponse.model_validate(task_list))


@router.put("/taskList/{task_list_id}", response_model=Envelope, tags=["task-lists"])
async def update_task_list(
    body: TaskListUpdateRequest,
    task_list_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    updates = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None}
    task_list = runtime.tasks.update_task_list(principal.user_id, task_list_id, updates)
    return Envelope(success=True, data=TaskListResponse.model_validate(task_list))


@router.delete("/taskList/{task_list_id}", response_model=Envelope, tags=["task-lists"])
async def delete_task_list(
    task_list_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    """Delete a list and every task in it. The default list cannot be deleted."""
    runtime = get_runtime()
    runtime.tasks.delete_task_list(principal.user_id, task_list_id)
    return Envelope(success=True, data={"deleted": True}, message="Task list deleted.")
