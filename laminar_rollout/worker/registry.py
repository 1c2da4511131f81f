"""Rollout function marking, loading and selection.

A rollout function is any function decorated with :func:`rollout_entrypoint`.
The decorator only sets a marker attribute; :func:`load_rollout_functions`
imports a file or module and collects the marked functions into a
:class:`RolloutRegistry`.
"""

import importlib
import importlib.util
import inspect
import sys
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any, TypeVar, overload

from laminar_rollout.exceptions import RolloutFunctionNotFoundError
from laminar_rollout.protocol import FunctionMetadata, RolloutParam, WorkerArgs

ROLLOUT_ENTRYPOINT_ATTR = "__rollout_entrypoint__"

type RolloutCallable = Callable[..., Any]

F = TypeVar("F", bound=Callable[..., Any])


@overload
def rollout_entrypoint(func: F, /) -> F: ...


@overload
def rollout_entrypoint(*, name: str | None = None) -> Callable[[F], F]: ...


def rollout_entrypoint(
    func: F | None = None, /, *, name: str | None = None
) -> F | Callable[[F], F]:
    """Mark a function as a rollout entrypoint servable by ``laminar-rollout dev``.

    @public

    The function is returned unchanged apart from a marker attribute, so the
    decorator composes with ``lmnr.observe`` in either order.

    Args:
        func: Function to mark (when used without parentheses).
        name: Name announced to the dashboard. Defaults to the function name.

    Example:
        >>> @rollout_entrypoint
        ... async def agent(question: str, max_turns: int = 5) -> str:
        ...     ...
        >>>
        >>> @rollout_entrypoint(name="support-agent")
        ... def support(ticket_id: str) -> dict[str, Any]:
        ...     ...
    """

    def decorator(f: F) -> F:
        setattr(f, ROLLOUT_ENTRYPOINT_ATTR, name or f.__name__)
        return f

    if func is not None:
        return decorator(func)
    return decorator


def _describe_parameter(parameter: inspect.Parameter) -> RolloutParam:
    annotation = parameter.annotation
    has_default = parameter.default is not inspect.Parameter.empty
    return RolloutParam(
        name=parameter.name,
        type=None if annotation is inspect.Parameter.empty else inspect.formatannotation(annotation),
        required=not has_default,
        default=repr(parameter.default) if has_default else None,
    )


@dataclass(frozen=True)
class RolloutFunction:
    """A marked function together with its announced name and parameters."""

    name: str
    fn: RolloutCallable
    params: tuple[RolloutParam, ...]

    @classmethod
    def from_callable(cls, fn: RolloutCallable, name: str | None = None) -> "RolloutFunction":
        signature = inspect.signature(fn)
        params = tuple(
            _describe_parameter(p)
            for p in signature.parameters.values()
            if p.kind not in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)
        )
        resolved = name or getattr(fn, ROLLOUT_ENTRYPOINT_ATTR, None) or fn.__name__
        return cls(name=resolved, fn=fn, params=params)

    @property
    def metadata(self) -> FunctionMetadata:
        return FunctionMetadata(name=self.name, params=list(self.params))

    def order_args(self, args: WorkerArgs) -> tuple[list[Any], dict[str, Any]]:
        """Split run arguments into call positionals and keywords.

        A list is passed positionally. A mapping is matched to parameters by
        name; parameters missing from the mapping are omitted so their
        defaults apply. Unknown keys are only passed through to ``**kwargs``.
        """
        if isinstance(args, list):
            return list(args), {}

        positional: list[Any] = []
        keywords: dict[str, Any] = {}
        accepts_var_keyword = False
        known: set[str] = set()
        for parameter in inspect.signature(self.fn).parameters.values():
            if parameter.kind is inspect.Parameter.VAR_KEYWORD:
                accepts_var_keyword = True
                continue
            if parameter.kind is inspect.Parameter.VAR_POSITIONAL:
                continue
            known.add(parameter.name)
            if parameter.name not in args:
                continue
            if parameter.kind is inspect.Parameter.POSITIONAL_ONLY:
                positional.append(args[parameter.name])
            else:
                keywords[parameter.name] = args[parameter.name]

        if accepts_var_keyword:
            keywords.update({key: value for key, value in args.items() if key not in known})
        return positional, keywords


class RolloutRegistry:
    """Rollout functions found in one loaded file or module, keyed by name."""

    def __init__(self, functions: Iterable[RolloutFunction] = ()) -> None:
        self._functions: dict[str, RolloutFunction] = {}
        for function in functions:
            self._functions[function.name] = function

    def register(self, fn: RolloutCallable, name: str | None = None) -> RolloutFunction:
        function = RolloutFunction.from_callable(fn, name)
        self._functions[function.name] = function
        return function

    @property
    def names(self) -> list[str]:
        return list(self._functions)

    def get(self, name: str) -> RolloutFunction | None:
        return self._functions.get(name)

    def __len__(self) -> int:
        return len(self._functions)

    def __iter__(self) -> Iterator[RolloutFunction]:
        return iter(self._functions.values())

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def select(self, function_name: str | None = None) -> RolloutFunction:
        """Pick the function to serve.

        Raises:
            RolloutFunctionNotFoundError: No functions, an unknown name, or
                several functions and no name.
        """
        if not self._functions:
            raise RolloutFunctionNotFoundError(
                "No rollout functions found. Make sure the function is decorated with @rollout_entrypoint"
            )

        available = ", ".join(self._functions)
        if function_name:
            if (selected := self._functions.get(function_name)) is None:
                raise RolloutFunctionNotFoundError(
                    f"Function '{function_name}' not found. Available functions: {available}"
                )
            return selected

        if len(self._functions) == 1:
            return next(iter(self._functions.values()))

        raise RolloutFunctionNotFoundError(
            f"Multiple rollout functions found: {available}. Use --function to specify which one to serve."
        )


def _import_file(file_path: str) -> ModuleType:
    path = Path(file_path).resolve()
    if not path.is_file():
        raise FileNotFoundError(f"Rollout file not found: {file_path}")

    # Sibling imports in the user's file resolve against its directory
    parent = str(path.parent)
    if parent not in sys.path:
        sys.path.insert(0, parent)

    module_name = path.stem
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load rollout file: {file_path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)
    return module


def _import_module(module_path: str) -> ModuleType:
    cwd = str(Path.cwd())
    if cwd not in sys.path:
        sys.path.insert(0, cwd)
    return importlib.import_module(module_path)


def load_rollout_functions(
    file_path: str | None = None, module_path: str | None = None
) -> RolloutRegistry:
    """Import ``file_path`` or ``module_path`` and collect its rollout functions.

    @public

    Only functions defined or imported at module level are found.

    Raises:
        ValueError: Neither a file nor a module was given.
        FileNotFoundError: ``file_path`` does not exist.
    """
    if module_path:
        module = _import_module(module_path)
    elif file_path:
        module = _import_file(file_path)
    else:
        raise ValueError("Either file_path or module_path must be provided")

    registry = RolloutRegistry()
    for value in list(vars(module).values()):
        if callable(value) and getattr(value, ROLLOUT_ENTRYPOINT_ATTR, None):
            registry.register(value)
    return registry
