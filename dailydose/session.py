# dailydose/session.py
# Single-user device session: the app keeps all data on the phone, so the
# "signed in" user is the configured local id until sign_out().

from typing import Optional

from .repository import AuthSession


class LocalSession(AuthSession):
    def __init__(self, user_id: Optional[str]):
        self._user_id = (user_id or "").strip() or None

    def current_user_id(self) -> Optional[str]:
        return self._user_id

    def sign_in(self, user_id: str):
        self._user_id = (user_id or "").strip() or None

    def sign_out(self):
        self._user_id = None
