"""Read-only collaborators consumed to build generation requests.

Provider accounts (with already-decrypted credentials) and user profile data
are owned by other services; this module only defines the narrow interfaces
the generation service depends on, plus in-memory implementations for local
runs and tests.
"""

from __future__ import annotations

import threading
from typing import Protocol

from .models import BodyData, FitnessAssessment, FitnessGoal, ProviderAccount


class ProviderAccountSource(Protocol):
    def get_account(self, account_id: int) -> ProviderAccount | None: ...

    def get_default_account(self, user_id: int) -> ProviderAccount | None: ...


class ProfileSource(Protocol):
    def get_latest_body_data(self, user_id: int) -> BodyData | None: ...

    def get_active_goals(self, user_id: int) -> list[FitnessGoal]: ...

    def get_latest_assessment(self, user_id: int) -> FitnessAssessment | None: ...


class InMemoryProviderAccountSource:
    def __init__(self, accounts: list[ProviderAccount] | None = None) -> None:
        self._lock = threading.Lock()
        self._accounts: dict[int, ProviderAccount] = {}
        for account in accounts or []:
            self.add(account)

    def add(self, account: ProviderAccount) -> None:
        with self._lock:
            self._accounts[account.account_id] = account

    def get_account(self, account_id: int) -> ProviderAccount | None:
        with self._lock:
            return self._accounts.get(account_id)

    def get_default_account(self, user_id: int) -> ProviderAccount | None:
        with self._lock:
            accounts = list(self._accounts.values())
        # User-owned defaults win over the shared service account.
        for account in accounts:
            if account.user_id == user_id and account.is_default:
                return account
        for account in accounts:
            if account.user_id is None and account.is_default:
                return account
        return None


class InMemoryProfileSource:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._body_data: dict[int, BodyData] = {}
        self._goals: dict[int, list[FitnessGoal]] = {}
        self._assessments: dict[int, FitnessAssessment] = {}

    def set_body_data(self, user_id: int, body_data: BodyData) -> None:
        with self._lock:
            self._body_data[user_id] = body_data

    def set_goals(self, user_id: int, goals: list[FitnessGoal]) -> None:
        with self._lock:
            self._goals[user_id] = list(goals)

    def set_assessment(self, user_id: int, assessment: FitnessAssessment) -> None:
        with self._lock:
            self._assessments[user_id] = assessment

    def get_latest_body_data(self, user_id: int) -> BodyData | None:
        with self._lock:
            return self._body_data.get(user_id)

    def get_active_goals(self, user_id: int) -> list[FitnessGoal]:
        with self._lock:
            return list(self._goals.get(user_id, []))

    def get_latest_assessment(self, user_id: int) -> FitnessAssessment | None:
        with self._lock:
            return self._assessments.get(user_id)
