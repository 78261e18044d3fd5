from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from open_llm_scheduler.catalogs.paths import CatalogDataPaths
from open_llm_scheduler.errors import ModelCatalogError

logger = logging.getLogger("open_llm_scheduler.config")


class QuotaLimits(BaseModel):
    rpm: int = Field(gt=0)
    tpm: int = Field(gt=0)
    rpd: int = Field(gt=0)


@dataclass(frozen=True, slots=True)
class ModelProfile:
    name: str
    limits: QuotaLimits


class ModelCatalog(BaseModel):
    default_limits: QuotaLimits = QuotaLimits(rpm=2, tpm=125000, rpd=50)
    models: dict[str, QuotaLimits] = Field(default_factory=dict)
    strategies: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("strategies", mode="before")
    @classmethod
    def _coerce_strategies(cls, value: Any) -> dict[str, list[str]]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("strategies must be a mapping of name to model list")
        coerced: dict[str, list[str]] = {}
        for name, models in value.items():
            if isinstance(models, str):
                models = [models]
            seen: list[str] = []
            for model in models or []:
                model_name = str(model).strip()
                if model_name and model_name not in seen:
                    seen.append(model_name)
            coerced[str(name).strip().lower()] = seen
        return coerced

    @model_validator(mode="after")
    def _require_non_empty_strategies(self) -> ModelCatalog:
        for name, models in self.strategies.items():
            if not models:
                raise ValueError(f"strategy '{name}' has no models")
        return self

    def limits_for(self, model: str) -> QuotaLimits:
        limits = self.models.get(model)
        if limits is None:
            logger.warning("model_catalog_unknown_model model=%s using=default", model)
            return self.default_limits
        return limits

    def profile(self, model: str) -> ModelProfile:
        return ModelProfile(name=model, limits=self.limits_for(model))

    def profiles_for(
        self, strategy: str, primary_model: str | None = None
    ) -> list[ModelProfile]:
        """Ordered fallback chain for ``strategy``.

        ``primary_model`` is moved (or added) to the front of the chain.
        """
        key = strategy.strip().lower()
        if key not in self.strategies:
            known = ", ".join(sorted(self.strategies)) or "none"
            raise ModelCatalogError(
                f"Unknown strategy '{strategy}'. Known strategies: {known}."
            )
        order = list(self.strategies[key])
        if primary_model:
            primary = primary_model.strip()
            order = [primary] + [name for name in order if name != primary]
        return [self.profile(name) for name in order]


def load_model_catalog(path: str | Path | None = None) -> ModelCatalog:
    catalog_path = Path(path) if path else CatalogDataPaths.models_yaml()
    if not catalog_path.exists():
        raise FileNotFoundError(f"Model catalog not found at '{catalog_path}'.")

    with catalog_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{catalog_path}'.")

    try:
        return ModelCatalog.model_validate(raw)
    except ValueError as exc:
        raise ModelCatalogError(f"Invalid model catalog '{catalog_path}': {exc}") from exc
