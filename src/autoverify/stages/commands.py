from __future__ import annotations

from collections.abc import Mapping

from autoverify.models import StageKind, StageResult, VerificationContext
from autoverify.stages.base import StageRunner
from autoverify.toolchain import ToolchainCommand


class CommandStage(StageRunner):
    """Runs one toolchain command; a missing toolchain entry passes automatically."""

    def _command(self) -> ToolchainCommand | None:
        return getattr(self.env.toolchain, self.kind.value)

    def _target_files(self, ctx: VerificationContext) -> list[str] | None:
        return None

    async def _execute(
        self, ctx: VerificationContext, upstream: Mapping[StageKind, StageResult]
    ) -> StageResult:
        command = self._command()
        if command is None:
            return StageResult.ok(self.kind)
        files = self._target_files(ctx)
        if files is not None and not files:
            return StageResult.ok(self.kind)

        result = await self._run_tool(command.render(files or ()), ctx)
        if result.ok:
            return StageResult.ok(self.kind, duration_ms=result.duration_ms, files=files or ())
        output = result.output or f"{command.command} exited with code {result.exit_code}"
        return StageResult.blocked(
            self.kind, output, duration_ms=result.duration_ms, files=files or ()
        )


class LintStage(CommandStage):
    kind = StageKind.LINT
    timeout_seconds = 30.0

    def _target_files(self, ctx: VerificationContext) -> list[str] | None:
        toolchain = self.env.toolchain
        return [
            path
            for path in ctx.changed_files
            if toolchain.is_source_file(path) and (ctx.working_dir / path).is_file()
        ]


class TypecheckStage(CommandStage):
    kind = StageKind.TYPECHECK
    timeout_seconds = 60.0


class TestStage(CommandStage):
    __test__ = False

    kind = StageKind.TEST
    timeout_seconds = 120.0

    def _target_files(self, ctx: VerificationContext) -> list[str] | None:
        return self.env.toolchain.discover_test_files(ctx.changed_files, ctx.working_dir)


class BuildStage(CommandStage):
    kind = StageKind.BUILD
    timeout_seconds = 180.0
