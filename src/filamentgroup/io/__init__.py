"""Context and result file I/O for FilamentGroup."""

from .context_loader import context_from_dict, context_to_dict, load_context, save_result

__all__ = [
    "load_context",
    "context_from_dict",
    "context_to_dict",
    "save_result",
]
