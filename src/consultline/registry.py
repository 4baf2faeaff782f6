"""
Mutual exclusion of sessions per (customer, advisor) pair.

A claim is taken when a request is admitted and released when its session
reaches a terminal state, so a pair can never hold two live sessions or queue
tickets at once.
"""

from typing import Optional

from consultline.errors import AlreadyInSession


class SessionRegistry:
    def __init__(self) -> None:
        self._claims: dict[tuple[str, str], str] = {}

    def claim(self, customer_id: str, advisor_id: str, session_id: str) -> None:
        key = (customer_id, advisor_id)
        holder = self._claims.get(key)
        if holder is not None and holder != session_id:
            raise AlreadyInSession(customer_id, advisor_id)
        self._claims[key] = session_id

    def release(self, customer_id: str, advisor_id: str, session_id: str) -> None:
        key = (customer_id, advisor_id)
        if self._claims.get(key) == session_id:
            del self._claims[key]

    def holder(self, customer_id: str, advisor_id: str) -> Optional[str]:
        return self._claims.get((customer_id, advisor_id))

    def __len__(self) -> int:
        return len(self._claims)
