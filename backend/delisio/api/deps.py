"""FastAPI dependencies shared by the v1 routers."""
from __future__ import annotations

from fastapi import Depends, Request

from delisio.services.context import ServiceContext


def get_services(request: Request) -> ServiceContext:
    return request.app.state.services


def get_db(services: ServiceContext = Depends(get_services)):
    """Yield a database session from the application's session factory."""
    db = services.session_factory()
    try:
        yield db
    finally:
        db.close()


def paginate(total: int, page: int, page_size: int) -> dict[str, int]:
    return {
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": (total + page_size - 1) // page_size if total else 0,
    }
