"""repochat configuration loader.

Priority (high → low):
  1. CLI flags              (handled at call site, not in this module)
  2. Environment variables  (REPOCHAT_*)
  3. Per-project repochat.yaml  (current directory or --project-dir)
  4. Global ~/.repochat/config.yaml  (no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from repochat.errors import ConfigError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".repochat"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "repochat.yaml"

# Matches api_key, api-secret, *_token, token, *_secret, password, credential(s).
# Does not match max_tokens or context_chunks.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["storage", "chunking", "embedding", "pipeline", "retrieval", "chat", "timeouts"]
)

OVERFLOW_POLICIES: frozenset[str] = frozenset(["fallback", "reject"])

__all__ = [
    "ConfigError",
    "RepochatConfig",
    "load_config",
    "validate_config",
]


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class StorageCfg:
    """Where documents and vectors live (repochat.yaml: storage:).

    Attributes:
        db_path: SQLite document store file.
        qdrant_url: Qdrant server URL. When unset, ``qdrant_path`` is used.
        qdrant_path: Local on-disk Qdrant directory, or ``":memory:"``.
        collection: Qdrant collection holding chunk vectors.
    """

    db_path: str = ".repochat.db"
    qdrant_url: str | None = None
    qdrant_path: str = ".repochat-qdrant"
    collection: str = "code_chunks"


@dataclass
class ChunkingCfg:
    """Line-window chunking (repochat.yaml: chunking:)."""

    chunk_size: int = 30
    overlap_size: int = 10
    max_file_bytes: int = 1_000_000


@dataclass
class EmbeddingCfg:
    """Embedding provider (repochat.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536
    requests_per_second: float = 10.0
    query_cache_size: int = 256


@dataclass
class PipelineCfg:
    """Embedding pipeline (repochat.yaml: pipeline:).

    Attributes:
        embedding_batch_size: Chunks per provider call.
        embedding_workers_num: Worker threads, for both jobs and batches.
        queue_capacity: Maximum pending jobs before the overflow policy applies.
        overflow_policy: ``fallback`` (process synchronously) or ``reject``.
        max_failure_ratio: A run is ``failed`` when failed/total exceeds this.
        status_ttl_seconds: Terminal statuses are evicted after this long.
    """

    embedding_batch_size: int = 50
    embedding_workers_num: int = 3
    queue_capacity: int = 100
    overflow_policy: str = "fallback"
    max_failure_ratio: float = 0.5
    status_ttl_seconds: float = 3600.0


@dataclass
class RetrievalCfg:
    """Search defaults (repochat.yaml: retrieval:)."""

    default_limit: int = 10
    vector_weight: float = 0.7


@dataclass
class ChatCfg:
    """Chat orchestration (repochat.yaml: chat:)."""

    model: str = "openai/gpt-4o-mini"
    context_chunks: int = 8
    vector_weight: float = 0.7
    max_prompt_length: int = 12_000
    max_tokens: int = 1_000
    temperature: float = 0.7


@dataclass
class TimeoutsCfg:
    """Per-call-kind timeouts in seconds (repochat.yaml: timeouts:)."""

    vector_index: float = 10.0
    embedding: float = 60.0
    completion: float = 30.0


@dataclass
class RepochatConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    storage: StorageCfg = field(default_factory=StorageCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    pipeline: PipelineCfg = field(default_factory=PipelineCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    chat: ChatCfg = field(default_factory=ChatCfg)
    timeouts: TimeoutsCfg = field(default_factory=TimeoutsCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}', ignored.",
                UserWarning,
                stacklevel=4,
            )


def validate_config(cfg: RepochatConfig) -> None:
    """Check cross-field constraints. Called by load_config() and at service startup.

    Raises:
        ConfigError: On the first invalid value found.
    """
    ch = cfg.chunking
    if ch.chunk_size < 1:
        raise ConfigError(f"chunking.chunk_size must be >= 1 (got {ch.chunk_size})")
    if ch.overlap_size < 0:
        raise ConfigError(f"chunking.overlap_size must be >= 0 (got {ch.overlap_size})")
    if ch.overlap_size >= ch.chunk_size:
        raise ConfigError(
            f"chunking.overlap_size ({ch.overlap_size}) must be smaller than "
            f"chunking.chunk_size ({ch.chunk_size})"
        )

    p = cfg.pipeline
    if p.embedding_batch_size < 1:
        raise ConfigError("pipeline.embedding_batch_size must be >= 1")
    if p.embedding_workers_num < 1:
        raise ConfigError("pipeline.embedding_workers_num must be >= 1")
    if p.queue_capacity < 1:
        raise ConfigError("pipeline.queue_capacity must be >= 1")
    if p.overflow_policy not in OVERFLOW_POLICIES:
        raise ConfigError(
            f"pipeline.overflow_policy must be one of {sorted(OVERFLOW_POLICIES)} "
            f"(got '{p.overflow_policy}')"
        )
    if not 0.0 <= p.max_failure_ratio <= 1.0:
        raise ConfigError("pipeline.max_failure_ratio must be in [0.0, 1.0]")
    if p.status_ttl_seconds <= 0:
        raise ConfigError("pipeline.status_ttl_seconds must be positive")

    for name, weight in (
        ("retrieval.vector_weight", cfg.retrieval.vector_weight),
        ("chat.vector_weight", cfg.chat.vector_weight),
    ):
        if not 0.0 <= weight <= 1.0:
            raise ConfigError(f"{name} must be in [0.0, 1.0] (got {weight})")

    if not 1 <= cfg.retrieval.default_limit <= 100:
        raise ConfigError("retrieval.default_limit must be between 1 and 100")
    if not 1 <= cfg.chat.context_chunks <= 100:
        raise ConfigError("chat.context_chunks must be between 1 and 100")
    # Leaves room for the truncation marker.
    if cfg.chat.max_prompt_length < 200:
        raise ConfigError("chat.max_prompt_length must be >= 200")

    if cfg.embedding.dimensions < 1:
        raise ConfigError("embedding.dimensions must be >= 1")
    if cfg.embedding.requests_per_second <= 0:
        raise ConfigError("embedding.requests_per_second must be positive")

    for f in fields(TimeoutsCfg):
        value = getattr(cfg.timeouts, f.name)
        if value <= 0:
            raise ConfigError(f"timeouts.{f.name} must be positive (got {value})")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _parse_section(section_cls: type, raw: Any) -> Any:
    """Build a section dataclass from *raw*, coercing values to the default's type."""
    section = section_cls()
    if not isinstance(raw, dict):
        return section
    for f in fields(section_cls):
        if f.name not in raw:
            continue
        value = raw[f.name]
        default = getattr(section, f.name)
        try:
            if value is None or default is None:
                coerced = value
            elif isinstance(default, bool):
                coerced = bool(value)
            elif isinstance(default, int):
                coerced = int(value)
            elif isinstance(default, float):
                coerced = float(value)
            else:
                coerced = str(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(
                f"Invalid value for '{f.name}': {value!r} ({exc})"
            ) from exc
        setattr(section, f.name, coerced)
    return section


def _cfg_from_dict(data: dict[str, Any]) -> RepochatConfig:
    """Build a *RepochatConfig* from a merged raw YAML dict."""
    return RepochatConfig(
        storage=_parse_section(StorageCfg, data.get("storage")),
        chunking=_parse_section(ChunkingCfg, data.get("chunking")),
        embedding=_parse_section(EmbeddingCfg, data.get("embedding")),
        pipeline=_parse_section(PipelineCfg, data.get("pipeline")),
        retrieval=_parse_section(RetrievalCfg, data.get("retrieval")),
        chat=_parse_section(ChatCfg, data.get("chat")),
        timeouts=_parse_section(TimeoutsCfg, data.get("timeouts")),
    )


# env var → (section, field)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "REPOCHAT_DB_PATH": ("storage", "db_path"),
    "REPOCHAT_QDRANT_URL": ("storage", "qdrant_url"),
    "REPOCHAT_QDRANT_PATH": ("storage", "qdrant_path"),
    "REPOCHAT_COLLECTION": ("storage", "collection"),
    "REPOCHAT_EMBEDDING_MODEL": ("embedding", "model"),
    "REPOCHAT_CHAT_MODEL": ("chat", "model"),
    "REPOCHAT_CHUNK_SIZE": ("chunking", "chunk_size"),
    "REPOCHAT_OVERLAP_SIZE": ("chunking", "overlap_size"),
    "REPOCHAT_EMBEDDING_BATCH_SIZE": ("pipeline", "embedding_batch_size"),
    "REPOCHAT_EMBEDDING_WORKERS_NUM": ("pipeline", "embedding_workers_num"),
    "REPOCHAT_MAX_PROMPT_LENGTH": ("chat", "max_prompt_length"),
    "REPOCHAT_CHAT_CONTEXT_CHUNKS": ("chat", "context_chunks"),
    "REPOCHAT_CHAT_VECTOR_WEIGHT": ("chat", "vector_weight"),
    "REPOCHAT_EMBEDDING_TIMEOUT": ("timeouts", "embedding"),
    "REPOCHAT_COMPLETION_TIMEOUT": ("timeouts", "completion"),
    "REPOCHAT_VECTOR_INDEX_TIMEOUT": ("timeouts", "vector_index"),
}


def _apply_env_overrides(cfg: RepochatConfig) -> RepochatConfig:
    """Apply REPOCHAT_* environment variable overrides (layer 2)."""
    for env_var, (section_name, field_name) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_var)
        if not raw:
            continue
        section = getattr(cfg, section_name)
        patched = _parse_section(type(section), {**vars(section), field_name: raw})
        setattr(cfg, section_name, patched)
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> RepochatConfig:
    """Load and return a merged, validated *RepochatConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *repochat.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *RepochatConfig* with env var overrides applied.

    Raises:
        ConfigError: If global config contains API-key-like fields, or any
            value fails validation.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    validate_config(cfg)
    return cfg
