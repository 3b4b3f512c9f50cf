"""
Shared dependencies for the API routers.

Authentication happens upstream; callers identify themselves with the
``X-Company-Id`` and ``X-User-Id`` headers.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request

from jobimport.domain.imports.workers import ImportWorkerPool


@dataclass(frozen=True)
class Caller:
    company_id: str
    user_id: str


def get_caller(
    x_company_id: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> Caller:
    if not x_company_id or not x_company_id.strip():
        raise HTTPException(status_code=401, detail="X-Company-Id header is required")
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return Caller(company_id=x_company_id.strip(), user_id=x_user_id.strip())


def get_import_pool(request: Request) -> Optional[ImportWorkerPool]:
    """Worker pool started by the app lifespan; None when bootstrap was skipped."""
    return getattr(request.app.state, "import_pool", None)
