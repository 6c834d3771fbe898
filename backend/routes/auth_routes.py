from urllib.parse import urlencode

from fastapi import APIRouter
from fastapi.responses import RedirectResponse

from config import settings

router = APIRouter()


def handle_google_sign_in(redirect_to: str = "/") -> RedirectResponse:
    """跳转到身份服务的 Google 登录，登录后回到 redirect_to"""
    base = settings.auth_signin_url.rstrip("/")
    return RedirectResponse(f"{base}/google?{urlencode({'redirectTo': redirect_to})}", status_code=303)


@router.get("/auth/signin/google")
async def sign_in_with_google():
    return handle_google_sign_in("/")
