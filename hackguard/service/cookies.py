from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional


@dataclass(frozen=True)
class CookieInstruction:
    """Framework-neutral set/clear instruction for one client-held value.

    ``value=None`` means clear the cookie.
    """

    name: str
    value: Optional[str]
    httponly: bool
    secure: bool
    samesite: str = "strict"
    path: str = "/"
    domain: Optional[str] = None
    expires: Optional[datetime] = None

    @property
    def clears(self) -> bool:
        return self.value is None


class CookiePolicy:
    """Build the two cookies that carry a session to the browser.

    The session cookie holds only the opaque token and is never readable by
    page scripts. The CSRF cookie is readable so scripts can echo it back in
    the ``X-CSRF-Token`` header. Both expire with the server record and are
    marked Secure in production.
    """

    def __init__(
        self,
        *,
        session_cookie_name: str = "hackathon_session",
        csrf_cookie_name: str = "hackathon_csrf",
        secure: bool = False,
        domain: Optional[str] = None,
    ) -> None:
        self.session_cookie_name = session_cookie_name
        self.csrf_cookie_name = csrf_cookie_name
        self.secure = secure
        self.domain = domain

    def issue(
        self, token: str, csrf_token: Optional[str], expires_at: datetime
    ) -> List[CookieInstruction]:
        """Session cookie, plus the CSRF cookie when ``csrf_token`` is known."""
        cookies = [
            CookieInstruction(
                name=self.session_cookie_name,
                value=token,
                httponly=True,
                secure=self.secure,
                domain=self.domain,
                expires=expires_at,
            )
        ]
        if csrf_token:
            cookies.append(
                CookieInstruction(
                    name=self.csrf_cookie_name,
                    value=csrf_token,
                    httponly=False,
                    secure=self.secure,
                    domain=self.domain,
                    expires=expires_at,
                )
            )
        return cookies

    def clear(self) -> List[CookieInstruction]:
        return [
            CookieInstruction(
                name=self.session_cookie_name,
                value=None,
                httponly=True,
                secure=self.secure,
                domain=self.domain,
            ),
            CookieInstruction(
                name=self.csrf_cookie_name,
                value=None,
                httponly=False,
                secure=self.secure,
                domain=self.domain,
            ),
        ]
