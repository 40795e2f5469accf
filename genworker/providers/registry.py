import logging
from typing import Dict, Iterable, List, Optional

from .anthropic import AnthropicScriptProvider
from .base import MediaProvider
from .kling import KlingImageToVideoProvider
from .openai import OpenAITTSProvider, SoraVideoProvider

log = logging.getLogger(__name__)


class UnknownProviderError(LookupError):
    def __init__(self, keys: Iterable[str]):
        self.keys = sorted(keys)
        super().__init__(f"Unknown provider(s): {', '.join(self.keys)}")


def default_adapters() -> List[MediaProvider]:
    return [
        AnthropicScriptProvider("anthropic-haiku", "claude-haiku-4-5-20251001", input_rate=1.0, output_rate=5.0),
        AnthropicScriptProvider("anthropic-sonnet", "claude-sonnet-4-5-20250929", input_rate=3.0, output_rate=15.0),
        OpenAITTSProvider(),
        SoraVideoProvider("openai-sora-2", "sora-2", 10, 20),
        SoraVideoProvider("openai-sora-2-pro", "sora-2-pro", 20, 40),
        KlingImageToVideoProvider(),
    ]


class AdapterResolver:
    """Provider key -> adapter instance. The table is fixed when the worker starts."""

    def __init__(self, adapters: Optional[Iterable[MediaProvider]] = None):
        self._table: Dict[str, MediaProvider] = {}
        for adapter in default_adapters() if adapters is None else adapters:
            if adapter.name in self._table:
                raise ValueError(f"Duplicate provider key {adapter.name!r}")
            self._table[adapter.name] = adapter

    def resolve(self, key: str) -> Optional[MediaProvider]:
        return self._table.get(key)

    def validate(self, keys: Iterable[str]) -> None:
        unknown = {k for k in keys if k not in self._table}
        if unknown:
            raise UnknownProviderError(unknown)

    def keys(self) -> List[str]:
        return sorted(self._table)

    def __iter__(self):
        return iter(self._table.values())
