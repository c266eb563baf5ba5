from __future__ import annotations

from typing import Optional

from hackguard.service.crypto import sign


class DeviceFingerprinter:
    """Derive a keyed hash of browser signals to bind a session to a device.

    The binding is soft: same browser configuration, not same IP, so mobile
    and NAT roaming keep working. A mismatch is a hijack signal, not proof.
    Rotating the secret changes every fingerprint and therefore invalidates
    all outstanding sessions.
    """

    def __init__(self, secret: str) -> None:
        self._secret = secret

    def fingerprint(
        self, user_agent: Optional[str], accept_language: Optional[str]
    ) -> str:
        user_agent = user_agent or ""
        # Length prefix keeps ("a:", "b") and ("a", ":b") apart
        components = f"{len(user_agent)}:{user_agent}:{accept_language or ''}"
        return sign(self._secret, components)
