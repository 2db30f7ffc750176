"""Configuration loading, dataclasses and the settings store."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

import yaml

from .catalog import GIB, ModelCategory, ModelDescriptor
from .prompts import DEFAULT_SYSTEM


@dataclass
class AppConfig:
    title: str = "DeskLM"
    host: str = "127.0.0.1"
    port: int = 7860
    concurrency_limit: int = 1
    sampling_interval_ms: int = 2000
    offline_mode: bool = False
    gpu_index: int | None = 0
    log_level: str = "INFO"


@dataclass
class GenerationDefaults:
    max_tokens: int = 4096
    display_every_n_tokens: int = 4
    temperature: float = 0.7
    top_p: float = 0.9
    do_sample: bool = True
    max_context: int = 4096


@dataclass
class EngineConfig:
    backend: str = "airllm"
    models_dir: str = "./models"
    layer_cache_dir: str = "./cache/airllm_layers"
    remote_url: str = "http://127.0.0.1:11434"
    remote_api_key: str | None = None
    remote_model: str | None = None


@dataclass
class GuardrailConfig:
    level: str = "balanced"
    custom_percentage: int = 50


@dataclass
class ToolsConfig:
    enabled: bool = True
    max_rounds: int = 3


@dataclass
class ModelsConfig:
    selected: dict[str, str] = field(default_factory=dict)
    extra: list[ModelDescriptor] = field(default_factory=list)


@dataclass
class RootConfig:
    app: AppConfig = field(default_factory=AppConfig)
    generation_defaults: GenerationDefaults = field(default_factory=GenerationDefaults)
    engine: EngineConfig = field(default_factory=EngineConfig)
    guardrails: GuardrailConfig = field(default_factory=GuardrailConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    system_prompt: str = DEFAULT_SYSTEM


def _get(data: dict[str, Any], key: str, default: Any) -> Any:
    return data.get(key, default) if isinstance(data, dict) else default


def _parse_descriptor(item: dict[str, Any]) -> ModelDescriptor:
    name = _get(item, "name", "")
    if not name:
        raise ValueError("Extra model entries need a name")
    return ModelDescriptor(
        name=name,
        display_name=_get(item, "display_name", name),
        provider=_get(item, "provider", ""),
        size_bytes=int(float(_get(item, "size_gb", 0)) * GIB),
        category=ModelCategory(_get(item, "category", ModelCategory.CORE.value)),
        repo=_get(item, "repo", ""),
        description=_get(item, "description", ""),
        compression=_get(item, "compression", None),
    )


def parse_config(raw: dict[str, Any]) -> RootConfig:
    app_raw = _get(raw, "app", {})
    gen_raw = _get(raw, "generation_defaults", {})
    engine_raw = _get(raw, "engine", {})
    guard_raw = _get(raw, "guardrails", {})
    tools_raw = _get(raw, "tools", {})
    models_raw = _get(raw, "models", {})

    app = AppConfig(
        title=_get(app_raw, "title", AppConfig.title),
        host=_get(app_raw, "host", AppConfig.host),
        port=int(_get(app_raw, "port", AppConfig.port)),
        concurrency_limit=int(_get(app_raw, "concurrency_limit", AppConfig.concurrency_limit)),
        sampling_interval_ms=int(_get(app_raw, "sampling_interval_ms", AppConfig.sampling_interval_ms)),
        offline_mode=bool(_get(app_raw, "offline_mode", AppConfig.offline_mode)),
        gpu_index=_get(app_raw, "gpu_index", AppConfig.gpu_index),
        log_level=str(_get(app_raw, "log_level", AppConfig.log_level)).upper(),
    )

    gen = GenerationDefaults(
        max_tokens=int(_get(gen_raw, "max_tokens", GenerationDefaults.max_tokens)),
        display_every_n_tokens=int(
            _get(gen_raw, "display_every_n_tokens", GenerationDefaults.display_every_n_tokens)
        ),
        temperature=float(_get(gen_raw, "temperature", GenerationDefaults.temperature)),
        top_p=float(_get(gen_raw, "top_p", GenerationDefaults.top_p)),
        do_sample=bool(_get(gen_raw, "do_sample", GenerationDefaults.do_sample)),
        max_context=int(_get(gen_raw, "max_context", GenerationDefaults.max_context)),
    )

    engine = EngineConfig(
        backend=str(_get(engine_raw, "backend", EngineConfig.backend)).lower(),
        models_dir=_get(engine_raw, "models_dir", EngineConfig.models_dir),
        layer_cache_dir=_get(engine_raw, "layer_cache_dir", EngineConfig.layer_cache_dir),
        remote_url=_get(engine_raw, "remote_url", EngineConfig.remote_url),
        remote_api_key=_get(engine_raw, "remote_api_key", EngineConfig.remote_api_key),
        remote_model=_get(engine_raw, "remote_model", EngineConfig.remote_model),
    )

    guardrails = GuardrailConfig(
        level=str(_get(guard_raw, "level", GuardrailConfig.level)),
        custom_percentage=int(_get(guard_raw, "custom_percentage", GuardrailConfig.custom_percentage)),
    )

    tools = ToolsConfig(
        enabled=bool(_get(tools_raw, "enabled", ToolsConfig.enabled)),
        max_rounds=int(_get(tools_raw, "max_rounds", ToolsConfig.max_rounds)),
    )

    selected_raw = _get(models_raw, "selected", {})
    extra_raw = _get(models_raw, "extra", [])
    models = ModelsConfig(
        selected={str(k): str(v) for k, v in selected_raw.items()} if isinstance(selected_raw, dict) else {},
        extra=[_parse_descriptor(item) for item in extra_raw] if isinstance(extra_raw, list) else [],
    )

    return RootConfig(
        app=app,
        generation_defaults=gen,
        engine=engine,
        guardrails=guardrails,
        tools=tools,
        models=models,
        system_prompt=_get(raw, "system_prompt", DEFAULT_SYSTEM),
    )


def load_config(path: str) -> RootConfig:
    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    return parse_config(raw)


class SettingsStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any:
        ...


class MemorySettings:
    """Thread-safe in-memory key/value settings."""

    def __init__(self, values: dict[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = dict(values or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._values[key] = value

    def update(self, values: dict[str, Any]) -> None:
        with self._lock:
            self._values.update(values)

    def as_dict(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._values)


def settings_from_config(cfg: RootConfig) -> MemorySettings:
    values: dict[str, Any] = {
        "guardrails.level": cfg.guardrails.level,
        "guardrails.custom_percentage": cfg.guardrails.custom_percentage,
        "remote.url": cfg.engine.remote_url,
        "remote.api_key": cfg.engine.remote_api_key,
        "remote.model": cfg.engine.remote_model,
        "generation.temperature": cfg.generation_defaults.temperature,
        "generation.top_p": cfg.generation_defaults.top_p,
        "generation.max_tokens": cfg.generation_defaults.max_tokens,
        "generation.display_every_n_tokens": cfg.generation_defaults.display_every_n_tokens,
        "tools.enabled": cfg.tools.enabled,
        "tools.max_rounds": cfg.tools.max_rounds,
        "system_prompt": cfg.system_prompt,
    }
    for category, name in cfg.models.selected.items():
        values[f"models.selected.{category}"] = name
    return MemorySettings(values)
