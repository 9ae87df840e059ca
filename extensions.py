from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


BF_EXTENSION_API_VERSION = 1

# Events emitted by the interpreter facade.
EVENTS = ("program_start", "program_end", "on_error")


class BFExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = BF_EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    op: str
    pc: int
    head: int


StepHandler = Callable[[Any, StepContext], None]


@dataclass
class HookRegistry:
    # event -> list[(priority, handler, ext_name)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)
    # list[(every_n, handler, ext_name, name)]
    _step_rules: List[Tuple[int, StepHandler, str, str]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        if event not in EVENTS:
            raise BFExtensionError(f"Unknown event '{event}' (expected one of {', '.join(EVENTS)})")
        self._events.setdefault(event, []).append((priority, handler, ext_name))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _ext in self._events.get(event, []):
            handler(*args, **kwargs)

    def add_step_rule(self, *, name: str, every_n: int, handler: StepHandler, ext_name: str) -> None:
        if every_n <= 0:
            raise BFExtensionError("every_n_steps must be >= 1")
        self._step_rules.append((every_n, handler, ext_name, name))

    @property
    def has_step_rules(self) -> bool:
        return bool(self._step_rules)

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for every_n, handler, _ext, _name in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


class ExtensionAPI:
    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = BF_EXTENSION_API_VERSION) -> None:
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        """Register ``handler`` for ``event``; usable as a decorator when ``handler`` is omitted."""
        registry = self._services.hook_registry

        def register(fn: Callable[..., None]) -> None:
            registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)

        return _register_or_decorate(register, handler)

    def every_n_steps(self, every_n: int, handler: Optional[StepHandler] = None, *, name: str = ""):
        """Run ``handler`` before every ``every_n``-th executed command."""
        registry = self._services.hook_registry

        def register(fn: StepHandler) -> None:
            rule_name = name or getattr(fn, "__name__", "step_rule")
            registry.add_step_rule(name=rule_name, every_n=every_n, handler=fn, ext_name=self._ext_name)

        return _register_or_decorate(register, handler)


def _register_or_decorate(register: Callable[[Any], None], handler: Optional[Callable[..., Any]]):
    if handler is not None:
        register(handler)
        return handler

    def deco(fn: Callable[..., Any]) -> Callable[..., Any]:
        register(fn)
        return fn

    return deco


def _extension_module_name(path: str) -> str:
    # Two extensions with the same file name in different directories must not collide.
    stem = os.path.splitext(os.path.basename(path))[0]
    ident = "".join(ch if ch.isalnum() else "_" for ch in stem)
    digest = hashlib.sha256(path.encode("utf-8")).hexdigest()[:12]
    return f"bf_ext_{ident}_{digest}"


def load_extension_module(path: str) -> Any:
    """Import the extension file at ``path`` as a fresh module.

    The extension's own directory is on ``sys.path`` while its top level
    runs, so it can import helper modules shipped next to it. Any exception
    raised by that top level is reported as a BFExtensionError.
    """
    path = os.path.abspath(path)
    if not os.path.isfile(path):
        raise BFExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(_extension_module_name(path), path)
    if spec is None or spec.loader is None:
        raise BFExtensionError(f"Extension {path} is not a loadable Python module")
    module = importlib.util.module_from_spec(spec)

    ext_dir = os.path.dirname(path)
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)
    except BFExtensionError:
        raise
    except Exception as exc:
        raise BFExtensionError(f"Extension {path} failed to import: {exc}") from exc
    finally:
        if ext_dir in sys.path:
            sys.path.remove(ext_dir)
    return module


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = RuntimeServices()
    for path in (os.path.abspath(p) for p in paths):
        module = load_extension_module(path)
        api_version = getattr(module, "BF_EXTENSION_API_VERSION", BF_EXTENSION_API_VERSION)
        if api_version != BF_EXTENSION_API_VERSION:
            raise BFExtensionError(
                f"Extension {path} requires API {api_version}, host supports {BF_EXTENSION_API_VERSION}"
            )
        register = getattr(module, "bf_register", None)
        if register is None or not callable(register):
            raise BFExtensionError(f"Extension {path} must define callable bf_register(ext)")
        ext_name = getattr(module, "BF_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0])
        ext = ExtensionAPI(services=services, ext_name=str(ext_name))
        register(ext)
    return services
