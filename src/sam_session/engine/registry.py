"""Model variant registry.

The registry provides:
- `resolve_variant(name)`: Canonical ModelVariant for a name or alias
- `list_models()`: Available variant names
- `list_aliases()`: Alias -> canonical name
- `model_info(name)`: Metadata without loading anything
- `resolve_checkpoint(variant)`: Local checkpoint directory, if installed
- `build_init_request(variant)`: Worker init request for a variant
"""

from __future__ import annotations

from pathlib import Path

from sam_session.config import DEFAULT_VARIANT, ENV_ROOT, MODEL_ALIASES, MODELS, ModelVariant
from sam_session.engine.protocol import InitRequest


def resolve_variant(name: str | ModelVariant | None = None) -> ModelVariant:
    """Resolve a variant name or alias.

    Args:
        name: Variant, canonical name or alias. None selects the default.

    Returns:
        The matching ModelVariant.

    Raises:
        ValueError: If the name is not registered.
    """
    if name is None:
        return DEFAULT_VARIANT
    if isinstance(name, ModelVariant):
        return name

    name_lower = name.lower()
    if name_lower in MODEL_ALIASES:
        return MODEL_ALIASES[name_lower]
    try:
        return ModelVariant(name_lower)
    except ValueError:
        available = ", ".join(list_models())
        raise ValueError(f"Unknown model '{name}'. Available: {available}") from None


def list_models() -> list[str]:
    """List all available variant names.

    Returns:
        Sorted list of canonical names.
    """
    return sorted(v.value for v in MODELS)


def list_aliases() -> dict[str, str]:
    """List all variant aliases.

    Returns:
        Dictionary mapping alias -> canonical name.
    """
    return {alias: variant.value for alias, variant in MODEL_ALIASES.items()}


def model_info(name: str | ModelVariant) -> dict[str, str | int]:
    """Get metadata about a variant without loading it.

    Args:
        name: Variant, canonical name or alias.

    Returns:
        Dictionary with variant metadata.
    """
    variant = resolve_variant(name)
    config = MODELS[variant]
    return {
        "name": variant.value,
        "model_id": config.model_id,
        "checkpoint_dir": config.checkpoint_dir,
        "weights_size_mb": config.weights_size_mb,
        "description": config.description,
    }


def resolve_checkpoint(variant: ModelVariant, env_root: Path | None = None) -> Path | None:
    """Locate a locally installed checkpoint.

    Args:
        variant: Model variant.
        env_root: Checkpoint root. Defaults to ENV_ROOT.

    Returns:
        The checkpoint directory if it exists, else None (weights are then
        fetched by model id).
    """
    root = env_root or ENV_ROOT
    candidate = root / MODELS[variant].checkpoint_dir
    return candidate if candidate.is_dir() else None


def build_init_request(
    variant: ModelVariant,
    env_root: Path | None = None,
    device: str | None = None,
    warm_up: bool = True,
) -> InitRequest:
    """Describe how the worker should load ``variant``."""
    root = env_root or ENV_ROOT
    checkpoint = resolve_checkpoint(variant, root)
    return InitRequest(
        model_id=MODELS[variant].model_id,
        checkpoint=str(checkpoint) if checkpoint is not None else None,
        env_root=str(root),
        device=device,
        warm_up=warm_up,
    )
