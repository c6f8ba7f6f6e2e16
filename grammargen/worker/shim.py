"""Merge the worker's error stream into its output stream across host versions.

Newer process builders expose ``redirect_error_stream()`` directly. Older
ones spell it differently (``redirectErrorStream``, ``set_redirect_error_stream(True)``,
a ``merge_error_stream`` flag, ...). The mechanism is resolved into a
tagged capability, cached per builder type, and then applied.
"""

from __future__ import annotations

import inspect
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Union

from .errors import UnsupportedHostVersionError

logger = logging.getLogger(__name__)

DIRECT_NAME = "redirect_error_stream"
_INDIRECT_KEYS = frozenset({"redirecterrorstream", "mergeerrorstream"})


class InvocationKind(str, Enum):
    CALL = "call"  # method()
    CALL_WITH_FLAG = "call_with_flag"  # method(True)
    ATTRIBUTE = "attribute"  # obj.name = True


@dataclass(frozen=True)
class DirectCapability:
    name: str = DIRECT_NAME


@dataclass(frozen=True)
class IndirectCapability:
    name: str
    kind: InvocationKind


@dataclass(frozen=True)
class Unsupported:
    reason: str


Capability = Union[DirectCapability, IndirectCapability, Unsupported]

_capabilities: Dict[type, Capability] = {}
_capabilities_lock = threading.Lock()


def _normalize(name: str) -> str:
    key = name.lower().replace("_", "")
    if key.startswith("set"):
        key = key[3:]
    return key


def _requires_argument(func: Any) -> bool:
    try:
        params = inspect.signature(func).parameters.values()
    except (TypeError, ValueError):
        return False
    return any(
        p.default is inspect.Parameter.empty
        and p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
        for p in params
    )


def _find_indirect(config: Any) -> Capability:
    """Scan the public surface of ``config`` for an equivalently named capability."""
    callables: List[IndirectCapability] = []
    attributes: List[IndirectCapability] = []

    for name in sorted(dir(config)):
        if name.startswith("_") or _normalize(name) not in _INDIRECT_KEYS:
            continue

        static = inspect.getattr_static(config, name, None)
        if isinstance(static, property):
            if static.fset is not None:
                attributes.append(IndirectCapability(name, InvocationKind.ATTRIBUTE))
            continue

        value = getattr(config, name, None)
        if callable(value):
            kind = InvocationKind.CALL_WITH_FLAG if _requires_argument(value) else InvocationKind.CALL
            callables.append(IndirectCapability(name, kind))
        elif isinstance(value, bool):
            attributes.append(IndirectCapability(name, InvocationKind.ATTRIBUTE))

    if callables:
        return callables[0]
    if attributes:
        return attributes[0]
    return Unsupported(reason=f"{type(config).__qualname__} exposes no error stream redirection")


def _has_instance_candidates(config: Any) -> bool:
    """True when a candidate name lives on the instance rather than its type."""
    names = getattr(config, "__dict__", None) or {}
    return any(
        name == DIRECT_NAME or (not name.startswith("_") and _normalize(name) in _INDIRECT_KEYS)
        for name in names
    )


def _resolve(config: Any) -> Capability:
    if callable(getattr(config, DIRECT_NAME, None)):
        return DirectCapability()
    return _find_indirect(config)


def resolve_capability(config: Any) -> Capability:
    """
    Resolve how ``config`` merges its error stream.

    Results are cached per type. Objects carrying candidate attributes in
    their instance ``__dict__`` are resolved on every call.
    """
    if _has_instance_candidates(config):
        return _resolve(config)

    config_type = type(config)
    with _capabilities_lock:
        cached = _capabilities.get(config_type)
    if cached is not None:
        return cached

    capability = _resolve(config)
    with _capabilities_lock:
        _capabilities[config_type] = capability
    logger.debug(f"Resolved stream capability for {config_type.__qualname__}: {capability}")
    return capability


def clear_capability_cache() -> None:
    with _capabilities_lock:
        _capabilities.clear()


class CompatibilityShim:
    """Applies error stream merging using whatever the running host supports."""

    def apply(self, config: Any) -> Capability:
        """
        Merge the error stream of ``config`` into its output stream.

        Returns:
            The capability that was used

        Raises:
            UnsupportedHostVersionError: If no mechanism exists; ``config`` is
                left untouched
        """
        capability = resolve_capability(config)

        if isinstance(capability, Unsupported):
            raise UnsupportedHostVersionError(
                f"Cannot merge worker error stream: {capability.reason}"
            )

        if isinstance(capability, IndirectCapability):
            logger.info(
                f"Using fallback '{capability.name}' ({capability.kind.value}) "
                f"to redirect the worker error stream"
            )
        try:
            if isinstance(capability, DirectCapability) or capability.kind == InvocationKind.CALL:
                getattr(config, capability.name)()
            elif capability.kind == InvocationKind.CALL_WITH_FLAG:
                getattr(config, capability.name)(True)
            else:
                setattr(config, capability.name, True)
        except AttributeError as e:
            raise UnsupportedHostVersionError(
                f"Cannot merge worker error stream: {type(config).__qualname__} "
                f"no longer exposes '{capability.name}'"
            ) from e

        return capability
