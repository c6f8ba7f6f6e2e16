"""Utility functions for worker management."""

from __future__ import annotations

import importlib.util
import logging
import socket
from pathlib import Path
from typing import Iterable, List

logger = logging.getLogger(__name__)


def find_free_port() -> int:
    """Find an available port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def namespace_root(namespace: str) -> Path:
    """
    Get the import root that provides a top-level package or module.

    Args:
        namespace: Dotted name; only the top-level component is used
                   (e.g. "grammargen.worker" -> root holding "grammargen")

    Returns:
        Directory to put on PYTHONPATH so the namespace imports the same code

    Raises:
        ModuleNotFoundError: If the namespace is not importable in the host
    """
    top = namespace.split(".", 1)[0]
    spec = importlib.util.find_spec(top)
    if spec is None:
        raise ModuleNotFoundError(f"Shared namespace '{top}' is not importable")

    # Packages (including namespace packages) expose search locations
    if spec.submodule_search_locations:
        return Path(next(iter(spec.submodule_search_locations))).resolve().parent
    if spec.origin and spec.origin not in ("built-in", "frozen"):
        return Path(spec.origin).resolve().parent
    raise ModuleNotFoundError(f"Shared namespace '{top}' has no source location")


def namespace_roots(namespaces: Iterable[str]) -> List[Path]:
    """Resolve namespaces to unique import roots, keeping first-seen order."""
    seen = set()
    roots: List[Path] = []
    for ns in namespaces:
        root = namespace_root(ns)
        if root not in seen:
            roots.append(root)
            seen.add(root)
    return roots


def apply_heap_limit(limit_bytes: int) -> None:
    """
    Cap this process' address space.

    Lowers both soft and hard limits; an existing lower hard limit is kept.
    """
    import resource

    soft, hard = resource.getrlimit(resource.RLIMIT_AS)
    if hard != resource.RLIM_INFINITY:
        limit_bytes = min(limit_bytes, hard)
    resource.setrlimit(resource.RLIMIT_AS, (limit_bytes, limit_bytes))
    logger.info(f"Address space limited to {limit_bytes / (1024 * 1024):.0f}MB")
