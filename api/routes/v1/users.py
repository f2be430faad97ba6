"""
api/routes/v1/users.py -- Principal management REST endpoints.

Routes:
  GET    /api/v1/users        -- admins: paginated list; moderators: their allow-list
  GET    /api/v1/users/{id}   -- admins: anyone; moderators: allow-list members
  POST   /api/v1/users        -- create principal (admin only)
  PUT    /api/v1/users/{id}   -- partial update, filtered by auth.policy
  DELETE /api/v1/users/{id}   -- delete principal (admin only, never self)

The handlers stay thin: role rules live in auth.policy, write rules (and the
decision to revoke sessions) in auth.credentials.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import PrincipalCreate, PrincipalListResponse, PrincipalResponse, PrincipalUpdateRequest
from auth import credentials, policy
from auth.dependencies import get_current_principal, require_admin, require_admin_or_moderator
from auth.errors import Forbidden, NotFound
from auth.models import ROLE_MODERATOR, AuthenticatedPrincipal, PrincipalPage
from auth.store import DEFAULT_PAGE_SIZE, PrincipalStore

# Auth policy:
# - GET    /api/v1/users:        admin or moderator (require_admin_or_moderator)
# - GET    /api/v1/users/{id}:   admin or moderator + policy.can_view
# - POST   /api/v1/users:        admin (require_admin)
# - PUT    /api/v1/users/{id}:   any authenticated principal; fields filtered by policy.authorize_update
# - DELETE /api/v1/users/{id}:   admin (require_admin) + policy.authorize_delete
router = APIRouter()


def _accessible_users(store: PrincipalStore, actor: AuthenticatedPrincipal) -> list[int]:
    """Load the moderator's allow-list fresh from storage. Empty for other roles."""
    if actor.role != ROLE_MODERATOR:
        return []
    record = store.get_by_id(actor.id)
    return list(record.accessible_users) if record is not None else []


@router.get("/users", response_model=PrincipalListResponse)
def list_users(
    request: Request,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    sort_by: str = "created_at",
    sort_desc: bool = False,
    actor: AuthenticatedPrincipal = Depends(require_admin_or_moderator),
) -> PrincipalListResponse:
    """List principals.

    Out-of-range page sizes and unknown sort fields fall back to the
    defaults instead of failing.
    """
    store: PrincipalStore = request.app.state.principal_store
    if policy.listing_scope(actor) == "all":
        return PrincipalListResponse.from_page(store.list_page(page, page_size, sort_by, sort_desc))

    items = store.list_by_ids(_accessible_users(store, actor))
    return PrincipalListResponse.from_page(
        PrincipalPage(
            items=items,
            total=len(items),
            page=1,
            page_size=len(items),
            total_pages=1 if items else 0,
        )
    )


@router.get("/users/{user_id}", response_model=PrincipalResponse)
def get_user(
    request: Request,
    user_id: int,
    actor: AuthenticatedPrincipal = Depends(require_admin_or_moderator),
) -> PrincipalResponse:
    """Return one principal. Moderators see only members of their allow-list."""
    store: PrincipalStore = request.app.state.principal_store
    if not policy.can_view(actor, user_id, _accessible_users(store, actor)):
        raise Forbidden("You do not have access to this user.", code="no_access")
    record = store.get_by_id(user_id)
    if record is None:
        raise NotFound()
    return PrincipalResponse.from_principal(record)


@router.post("/users", response_model=PrincipalResponse, status_code=201)
def create_user(
    request: Request,
    body: PrincipalCreate,
    actor: AuthenticatedPrincipal = Depends(require_admin),
) -> PrincipalResponse:
    """Create a principal. Admin only."""
    policy.authorize_create(actor)
    created = credentials.create_principal(
        request.app.state.principal_store,
        body.to_draft(),
        body.password,
        actor.id,
        request.app.state.audit,
    )
    return PrincipalResponse.from_principal(created)


@router.put("/users/{user_id}", response_model=PrincipalResponse)
def update_user(
    request: Request,
    user_id: int,
    body: PrincipalUpdateRequest,
    actor: AuthenticatedPrincipal = Depends(get_current_principal),
) -> PrincipalResponse:
    """Apply a partial update.

    The policy may reject the request outright or silently drop fields the
    actor may not change. Security-relevant changes revoke the target's
    sessions; the response then still succeeds, but the target's next
    request is force-logged-out.
    """
    store: PrincipalStore = request.app.state.principal_store
    permitted = policy.authorize_update(actor, user_id, body.to_update(), _accessible_users(store, actor))
    updated = credentials.apply_update(store, user_id, permitted, actor.id, request.app.state.audit)
    return PrincipalResponse.from_principal(updated)


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: int,
    actor: AuthenticatedPrincipal = Depends(require_admin),
) -> Response:
    """Delete a principal. Admin only; an admin cannot delete their own account."""
    policy.authorize_delete(actor, user_id)
    credentials.delete_principal(request.app.state.principal_store, user_id, actor.id, request.app.state.audit)
    return Response(status_code=204)
