"""
api/routes/v1/dashboard.py -- Role-guarded access probe for the dashboard pages.

Each dashboard page calls GET /api/v1/dashboard/{resource} before rendering.
200 means the caller may see it; 403 carries the caller's role and landing
page so the page can redirect there.

This is a read-only route -- no mutations here.
"""

from fastapi import APIRouter, Depends, Request

from api.models import DashboardAccessResponse
from auth.dependencies import authorize, get_current_session
from auth.models import Session

# Auth policy:
# - GET /api/v1/dashboard/{resource}: fully authenticated session + allow-list
#   for `resource` (auth.rbac.RESOURCE_ACCESS). Unlisted resources are denied.
router = APIRouter()


@router.get("/dashboard/{resource}", response_model=DashboardAccessResponse)
def check_access(
    request: Request,
    resource: str,
    session: Session = Depends(get_current_session),
) -> DashboardAccessResponse:
    authorize(session, resource)
    return DashboardAccessResponse(
        message="Access granted.",
        resource=resource,
        user={"username": session.username, "role": session.role},
    )
