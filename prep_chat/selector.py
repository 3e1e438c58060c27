"""Model catalog, current model selection, and provider-native tool toggles."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import os
from pathlib import Path
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .attachments import AttachmentManager
from .exceptions import ChatNetworkError, ChatProviderError, ChatValidationError

LOGGER = logging.getLogger(__name__)

STORAGE_KEY = "ai-chat-selected-model"
WEB_SEARCH_TOOL = "web_search"

_IMAGE_MODALITY_MARKERS = ("image", "multimodal", "vision")
_REASONING_PARAMETERS = frozenset({"reasoning", "include_reasoning"})
_PROVIDER_TOOL_PARAMETERS = {"web_search_options": WEB_SEARCH_TOOL}


class _CatalogModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )


class ModelPricing(_CatalogModel):
    prompt: float | None = None
    completion: float | None = None


class ModelInfo(_CatalogModel):
    """One catalog entry with the metadata capabilities are derived from."""

    id: str = Field(min_length=1)
    name: str = ""
    provider: str = ""
    tier: Literal["paid", "free"] = "paid"
    context_length: int | None = None
    pricing: ModelPricing | None = None
    modality: str = "text->text"
    supported_parameters: list[str] = Field(default_factory=list)

    @property
    def supports_images(self) -> bool:
        modality = self.modality.lower()
        return any(marker in modality for marker in _IMAGE_MODALITY_MARKERS)

    @property
    def supports_reasoning(self) -> bool:
        return bool(_REASONING_PARAMETERS.intersection(self.supported_parameters))

    @property
    def supports_tools(self) -> bool:
        return "tools" in self.supported_parameters

    @property
    def provider_tools(self) -> list[str]:
        return [
            tool
            for parameter, tool in _PROVIDER_TOOL_PARAMETERS.items()
            if parameter in self.supported_parameters
        ]


class ModelCatalog(_CatalogModel):
    """Available models grouped by tier."""

    paid: list[ModelInfo] = Field(default_factory=list)
    free: list[ModelInfo] = Field(default_factory=list)

    def all(self) -> list[ModelInfo]:
        return [*self.paid, *self.free]

    def find(self, model_id: str) -> ModelInfo | None:
        for model in self.all():
            if model.id == model_id:
                return model
        return None

    @classmethod
    def from_payload(cls, payload: Any) -> ModelCatalog:
        """Accept ``{"paid": [...], "free": [...]}`` or a flat list of models."""
        if isinstance(payload, dict) and "models" in payload:
            payload = payload["models"]
        if isinstance(payload, list):
            models = [ModelInfo.model_validate(item) for item in payload]
            return cls(
                paid=[m for m in models if m.tier == "paid"],
                free=[m for m in models if m.tier == "free"],
            )
        catalog = cls.model_validate(payload)
        for model in catalog.free:
            model.tier = "free"
        return catalog


async def fetch_catalog(
    endpoint: str,
    *,
    timeout_seconds: float = 30.0,
    headers: dict[str, str] | None = None,
    client: httpx.AsyncClient | None = None,
) -> ModelCatalog:
    """Download and validate the model catalog."""
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=timeout_seconds)
    try:
        response = await http.get(endpoint, headers=headers)
        response.raise_for_status()
        return ModelCatalog.from_payload(response.json())
    except httpx.HTTPStatusError as exc:
        raise ChatProviderError(
            f"Model catalog request failed with HTTP {exc.response.status_code}."
        ) from exc
    except httpx.TransportError as exc:
        raise ChatNetworkError(f"Unable to fetch the model catalog: {exc}") from exc
    except (ValueError, ValidationError) as exc:
        raise ChatProviderError(f"Model catalog payload is invalid: {exc}") from exc
    finally:
        if owns_client:
            await http.aclose()


@dataclass
class ModelSelection:
    model_id: str
    provider: str
    supports_images: bool = False
    supports_reasoning: bool = False
    supports_tools: bool = False
    available_provider_tools: list[str] = field(default_factory=list)
    enabled_provider_tools: list[str] = field(default_factory=list)


class PreferenceStore:
    """Durable per-user preferences in a private JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.warning(
                "preferences.read_failed",
                extra={"event": "preferences.read_failed", "path": str(self.path), "reason": str(exc)},
            )
            return {}
        return payload if isinstance(payload, dict) else {}

    def _write(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True),
            encoding="utf-8",
        )
        if os.name == "posix":
            try:
                self.path.chmod(0o600)
            except OSError:
                pass

    def get(self, user_id: str, key: str) -> Any:
        entry = self._read().get(user_id)
        return entry.get(key) if isinstance(entry, dict) else None

    def set(self, user_id: str, key: str, value: Any) -> None:
        payload = self._read()
        entry = payload.get(user_id)
        if not isinstance(entry, dict):
            entry = {}
        if value is None:
            entry.pop(key, None)
        else:
            entry[key] = value
        payload[user_id] = entry
        self._write(payload)


class ModelSelector:
    """Track the active model and invalidate state that depends on it."""

    def __init__(
        self,
        user_id: str,
        *,
        preferences: PreferenceStore | None = None,
        attachments: AttachmentManager | None = None,
        catalog: ModelCatalog | None = None,
    ) -> None:
        self.user_id = user_id
        self.preferences = preferences
        self.attachments = attachments
        self.catalog = catalog or ModelCatalog()
        self._selection: ModelSelection | None = None

    @property
    def selection(self) -> ModelSelection | None:
        return self._selection

    @property
    def enabled_provider_tools(self) -> list[str]:
        return list(self._selection.enabled_provider_tools) if self._selection else []

    def select(
        self,
        model_id: str,
        provider: str | None = None,
        supports_images: bool | None = None,
    ) -> ModelSelection:
        """Replace the selection; enabled provider tools never carry over.

        Capability flags come from the catalog when it knows ``model_id``; an
        explicit ``supports_images`` wins over the catalog.
        """
        info = self.catalog.find(model_id)
        images = supports_images if supports_images is not None else bool(
            info and info.supports_images
        )
        self._selection = ModelSelection(
            model_id=model_id,
            provider=provider or (info.provider if info else ""),
            supports_images=images,
            supports_reasoning=bool(info and info.supports_reasoning),
            supports_tools=bool(info and info.supports_tools),
            available_provider_tools=info.provider_tools if info else [],
            enabled_provider_tools=[],
        )
        if not images and self.attachments is not None:
            self.attachments.discard_all()
        if self.preferences is not None:
            self.preferences.set(self.user_id, STORAGE_KEY, model_id)
        LOGGER.info(
            "selector.model.selected",
            extra={
                "event": "selector.model.selected",
                "model_id": model_id,
                "provider": self._selection.provider,
                "supports_images": images,
            },
        )
        return self._selection

    def clear(self) -> None:
        self._selection = None

    def restore(self, catalog: ModelCatalog | None = None) -> ModelSelection | None:
        """Re-select the saved model when it still resolves in the catalog."""
        if catalog is not None:
            self.catalog = catalog
        if self.preferences is None:
            return None
        saved = self.preferences.get(self.user_id, STORAGE_KEY)
        if not isinstance(saved, str) or not saved:
            return None
        info = self.catalog.find(saved)
        if info is None:
            LOGGER.info(
                "selector.restore.fallback",
                extra={"event": "selector.restore.fallback", "model_id": saved},
            )
            self._selection = None
            self.preferences.set(self.user_id, STORAGE_KEY, None)
            return None
        return self.select(info.id, info.provider)

    def enable_provider_tool(self, name: str) -> list[str]:
        selection = self._require_selection()
        if name not in selection.available_provider_tools:
            raise ChatValidationError(
                f"{selection.model_id} does not support the {name} tool."
            )
        if name not in selection.enabled_provider_tools:
            selection.enabled_provider_tools.append(name)
        return list(selection.enabled_provider_tools)

    def disable_provider_tool(self, name: str) -> list[str]:
        selection = self._require_selection()
        if name in selection.enabled_provider_tools:
            selection.enabled_provider_tools.remove(name)
        return list(selection.enabled_provider_tools)

    def _require_selection(self) -> ModelSelection:
        if self._selection is None:
            raise ChatValidationError("No model is selected.")
        return self._selection
