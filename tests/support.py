"""Shared test doubles and canned provider responses."""

from __future__ import annotations

import threading

from fitplan_api.app.errors import ConfigurationError, GenerationCancelledError
from fitplan_api.app.providers import ProviderConfig

TRAINING_RESPONSE = (
    'Here is your plan: {"weeks": [{"week": 1, "theme": "base", "days": []}]} Good luck!'
)
NUTRITION_RESPONSE = '{"days": [{"day": 1, "meals": []}, {"day": 2, "meals": []}]}'

OWNER_ID = 7
OTHER_USER_ID = 8


class FakeProviderClient:
    """Scripted provider: pops one response per call, repeating the last one."""

    name = "fake"
    default_model = "fake-model"

    def __init__(self, responses: list[str | Exception] | None = None, *, delay_s: float = 0.0):
        self.responses: list[str | Exception] = list(responses or [TRAINING_RESPONSE])
        self.delay_s = delay_s
        self.prompts: list[str] = []
        self.configs: list[ProviderConfig] = []
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        with self._lock:
            return len(self.prompts)

    def generate(
        self,
        prompt: str,
        config: ProviderConfig,
        *,
        cancel_event: threading.Event | None = None,
    ) -> str:
        self.validate_config(config)
        with self._lock:
            self.prompts.append(prompt)
            self.configs.append(config)
            item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if self.delay_s:
            waiter = cancel_event if cancel_event is not None else threading.Event()
            if waiter.wait(self.delay_s):
                raise GenerationCancelledError("plan generation was cancelled during provider call")
        if isinstance(item, Exception):
            raise item
        return item

    def verify_connectivity(
        self,
        config: ProviderConfig,
        *,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.generate("ping", config, cancel_event=cancel_event)

    def validate_config(self, config: ProviderConfig) -> None:
        if not config.api_key:
            raise ConfigurationError("Fake API key is required")
