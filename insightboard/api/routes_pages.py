"""
api/routes_pages.py

Page routes. Rendering lives in the frontend; these handlers only confirm
what the authorization middleware decided and echo the identity headers it
injected, so the guard behaviour is observable end to end.
"""

from fastapi import APIRouter, Request

from insightboard.core.guards import AUTH_ONLY_PREFIXES, PROTECTED_PREFIXES

router = APIRouter(tags=["Pages"], include_in_schema=False)


async def render_page(request: Request) -> dict:
    return {
        "page": request.url.path,
        "user_id": request.headers.get("x-user-id"),
        "role": request.headers.get("x-user-role"),
    }


for _prefix in PROTECTED_PREFIXES + AUTH_ONLY_PREFIXES:
    router.add_api_route(_prefix, render_page, methods=["GET"])
    router.add_api_route(f"{_prefix}/{{subpath:path}}", render_page, methods=["GET"])
