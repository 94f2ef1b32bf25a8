from pathlib import Path

from autoverify.config import ToolchainConfig
from autoverify.toolchain import DEFAULT_TOOLCHAIN, Toolchain, ToolchainCommand


def _node_toolchain() -> Toolchain:
    return Toolchain.from_config(
        ToolchainConfig(
            preset="node",
            source_extensions=["ts", ".tsx"],
            lint="npx eslint",
            typecheck="npx tsc --noEmit",
            test="npx vitest run",
            coverage="",
            colocated_suffix=".test.ts",
            test_dir="",
            test_prefix="",
            test_extensions=[".ts", ".tsx"],
        )
    )


def test_command_render_appends_quoted_files_and_placeholders() -> None:
    command = ToolchainCommand("pytest --cov-report=lcov:{report}", file_args=True)

    rendered = command.render(["tests/test a.py"], report="/tmp/lcov.info")

    assert rendered == "pytest --cov-report=lcov:/tmp/lcov.info 'tests/test a.py'"
    assert command.executable == "pytest"
    assert ToolchainCommand("mypy .").render(["ignored.py"]) == "mypy ."


def test_empty_commands_become_missing_stages() -> None:
    toolchain = _node_toolchain()

    assert toolchain.coverage is None
    assert toolchain.build is None
    assert toolchain.source_extensions == (".ts", ".tsx")
    assert toolchain.typecheck is not None


def test_python_test_file_detection() -> None:
    assert DEFAULT_TOOLCHAIN.is_test_file("tests/test_worker.py")
    assert DEFAULT_TOOLCHAIN.is_test_file("pkg/worker_test.py")
    assert DEFAULT_TOOLCHAIN.is_test_file("tests/helpers.py")
    assert not DEFAULT_TOOLCHAIN.is_test_file("src/pkg/worker.py")
    assert DEFAULT_TOOLCHAIN.should_skip("src/pkg/__init__.py")
    assert not DEFAULT_TOOLCHAIN.should_skip("src/pkg/worker.py")


def test_script_test_file_detection_and_skips() -> None:
    toolchain = _node_toolchain()

    assert toolchain.is_test_file("src/cart.test.ts")
    assert toolchain.is_test_file("src/__tests__/cart.ts")
    assert toolchain.is_test_file("e2e/cart.spec.ts")
    assert not toolchain.is_test_file("src/cart.ts")
    assert toolchain.should_skip("src/global.d.ts")
    assert toolchain.should_skip("vite.config.ts")


def test_discover_test_files_maps_sources_to_existing_tests(tmp_path: Path) -> None:
    (tmp_path / "tests").mkdir()
    (tmp_path / "tests" / "test_cart.py").write_text("", encoding="utf-8")
    (tmp_path / "tests" / "test_orders.py").write_text("", encoding="utf-8")

    found = DEFAULT_TOOLCHAIN.discover_test_files(
        ["src/cart.py", "tests/test_orders.py", "src/missing.py", "README.md"], tmp_path
    )

    assert found == ["tests/test_cart.py", "tests/test_orders.py"]


def test_discover_colocated_tests(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "cart.test.ts").write_text("", encoding="utf-8")

    assert _node_toolchain().discover_test_files(["src/cart.ts"], tmp_path) == [
        "src/cart.test.ts"
    ]
