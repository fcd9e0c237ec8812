from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List

from loguru import logger

from .errors import AuthRequired
from .models import ParticipantKind, ProfileRef

LOGIN_PATH = "/login"


@dataclass(frozen=True)
class AuthUser:
    uid: str


IdentityCallback = Callable[[AuthUser | None], None]
Disposer = Callable[[], None]


class AuthProvider:
    """Contract consumed from the authentication collaborator."""

    def on_identity_change(self, callback: IdentityCallback) -> Disposer:
        raise NotImplementedError


class InMemoryAuthProvider(AuthProvider):
    """Process-local auth provider: one signed-in identity at a time."""

    def __init__(self, current: AuthUser | None = None) -> None:
        self.current = current
        self._callbacks: List[IdentityCallback] = []

    def on_identity_change(self, callback: IdentityCallback) -> Disposer:
        self._callbacks.append(callback)
        callback(self.current)

        def dispose() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                return

        return dispose

    def sign_in(self, uid: str) -> AuthUser:
        user = AuthUser(uid)
        if self.current != user:
            self.current = user
            self._emit()
        return user

    def sign_out(self) -> None:
        if self.current is None:
            return
        self.current = None
        self._emit()

    def _emit(self) -> None:
        for callback in list(self._callbacks):
            callback(self.current)


class RoleHint:
    """Ephemeral uid -> participant kind memo for the signed-in session."""

    def __init__(self) -> None:
        self._kinds: Dict[str, ParticipantKind] = {}

    def remember(self, uid: str, kind: ParticipantKind | str) -> None:
        self._kinds[uid] = ParticipantKind.parse(kind)

    def kind_for(self, uid: str) -> ParticipantKind | None:
        return self._kinds.get(uid)

    def forget(self, uid: str) -> None:
        self._kinds.pop(uid, None)

    def ref_for(self, uid: str) -> ProfileRef | None:
        kind = self.kind_for(uid)
        if kind is None:
            return None
        return ProfileRef(uid, kind)


class SessionGuard:
    """Follows the auth provider and redirects when nobody is signed in."""

    def __init__(
        self,
        auth: AuthProvider,
        on_redirect: Callable[[str], None] | None = None,
        on_identity: IdentityCallback | None = None,
    ) -> None:
        self._auth = auth
        self._on_redirect = on_redirect
        self._on_identity = on_identity
        self._dispose: Disposer | None = None
        self.user: AuthUser | None = None

    def start(self) -> None:
        if self._dispose is None:
            self._dispose = self._auth.on_identity_change(self._changed)

    def stop(self) -> None:
        if self._dispose is not None:
            self._dispose()
            self._dispose = None

    def require(self) -> str:
        if self.user is None:
            raise AuthRequired(LOGIN_PATH)
        return self.user.uid

    def _changed(self, user: AuthUser | None) -> None:
        self.user = user
        if user is None:
            logger.info("No signed-in identity; redirecting to login")
            if self._on_redirect is not None:
                self._on_redirect(LOGIN_PATH)
        if self._on_identity is not None:
            self._on_identity(user)
