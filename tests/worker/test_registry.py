"""Tests for rollout function marking, loading and selection."""

import textwrap
from pathlib import Path

import pytest

from laminar_rollout.exceptions import RolloutFunctionNotFoundError
from laminar_rollout.worker import (
    ROLLOUT_ENTRYPOINT_ATTR,
    RolloutFunction,
    RolloutRegistry,
    load_rollout_functions,
    rollout_entrypoint,
)


@rollout_entrypoint
def plain(question: str, turns: int = 3) -> str:
    return question * turns


@rollout_entrypoint(name="named-agent")
async def named(topic: str) -> str:
    return topic


def positional_only(a, /, b, *, c=1, **extra):
    return a, b, c, extra


class TestRolloutEntrypoint:
    def test_marks_without_wrapping(self):
        assert getattr(plain, ROLLOUT_ENTRYPOINT_ATTR) == "plain"
        assert plain("x", 2) == "xx"

    def test_custom_name(self):
        assert getattr(named, ROLLOUT_ENTRYPOINT_ATTR) == "named-agent"


class TestRolloutFunction:
    def test_metadata(self):
        function = RolloutFunction.from_callable(plain)

        assert function.name == "plain"
        question, turns = function.metadata.params
        assert (question.name, question.type, question.required, question.default) == ("question", "str", True, None)
        assert (turns.name, turns.type, turns.required, turns.default) == ("turns", "int", False, "3")

    def test_var_args_not_announced(self):
        function = RolloutFunction.from_callable(positional_only)
        assert [p.name for p in function.params] == ["a", "b", "c"]
        assert function.params[0].type is None

    def test_order_list_args_positionally(self):
        assert RolloutFunction.from_callable(plain).order_args(["hi", 2]) == (["hi", 2], {})

    def test_order_mapping_by_name_omitting_missing(self):
        assert RolloutFunction.from_callable(plain).order_args({"question": "hi"}) == ([], {"question": "hi"})

    def test_order_mapping_drops_unknown_keys(self):
        assert RolloutFunction.from_callable(plain).order_args({"question": "hi", "bogus": 1}) == (
            [],
            {"question": "hi"},
        )

    def test_order_mapping_positional_only_and_var_keyword(self):
        function = RolloutFunction.from_callable(positional_only)

        args, kwargs = function.order_args({"a": 1, "b": 2, "c": 3, "d": 4})

        assert args == [1]
        assert kwargs == {"b": 2, "c": 3, "d": 4}
        assert function.fn(*args, **kwargs) == (1, 2, 3, {"d": 4})


class TestRolloutRegistry:
    def test_single_function_auto_selected(self):
        registry = RolloutRegistry([RolloutFunction.from_callable(plain)])
        assert registry.select().name == "plain"

    def test_select_by_name(self):
        registry = RolloutRegistry()
        registry.register(plain)
        registry.register(named)

        assert registry.select("named-agent").fn is named
        assert "plain" in registry
        assert len(registry) == 2
        assert registry.names == ["plain", "named-agent"]

    def test_unknown_name_lists_available(self):
        registry = RolloutRegistry([RolloutFunction.from_callable(plain)])

        with pytest.raises(RolloutFunctionNotFoundError, match="Function 'other' not found. Available functions: plain"):
            registry.select("other")

    def test_several_functions_need_a_name(self):
        registry = RolloutRegistry()
        registry.register(plain)
        registry.register(named)

        with pytest.raises(RolloutFunctionNotFoundError, match="Use --function to specify which one to serve"):
            registry.select()

    def test_empty_registry(self):
        with pytest.raises(RolloutFunctionNotFoundError, match="No rollout functions found"):
            RolloutRegistry().select()


class TestLoadRolloutFunctions:
    def test_load_from_file(self, rollout_file: Path):
        registry = load_rollout_functions(file_path=str(rollout_file))

        assert registry.names == ["agent"]
        assert registry.select().fn("hi") == {"answer": "HI", "turns": 2}

    def test_sibling_imports_resolve(self, tmp_path: Path):
        (tmp_path / "helpers_for_rollout.py").write_text("PREFIX = 'helped: '\n")
        target = tmp_path / "sibling_agent.py"
        target.write_text(
            textwrap.dedent(
                """
                from helpers_for_rollout import PREFIX
                from laminar_rollout import rollout_entrypoint


                @rollout_entrypoint
                def run(text):
                    return PREFIX + text


                def not_marked():
                    pass
                """
            )
        )

        registry = load_rollout_functions(file_path=str(target))

        assert registry.names == ["run"]
        assert registry.select().fn("x") == "helped: x"

    def test_load_from_module(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        package = tmp_path / "rollout_pkg"
        package.mkdir()
        (package / "__init__.py").write_text("")
        (package / "agents.py").write_text(
            "from laminar_rollout import rollout_entrypoint\n\n@rollout_entrypoint(name='pkg-agent')\ndef go():\n    return 1\n"
        )
        monkeypatch.chdir(tmp_path)
        monkeypatch.syspath_prepend(str(tmp_path))

        registry = load_rollout_functions(module_path="rollout_pkg.agents")

        assert registry.names == ["pkg-agent"]

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_rollout_functions(file_path=str(tmp_path / "absent.py"))

    def test_no_target(self):
        with pytest.raises(ValueError):
            load_rollout_functions()
