"""
Sandboxed code runner collaborator.

``SubprocessCodeRunner`` executes a generated script in a separate Python
interpreter, inside a throw-away working directory. The input payload (the
SQL results as JSON) is written to the script's stdin; charts saved as PNG
files in the working directory are returned base64-encoded.
"""

import asyncio
import base64
import sys
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field

from ..core.config import settings
from ..core.logging import get_logger
from ..workflow.errors import CodeExecutionError

logger = get_logger("services.code_runner")


class CodeRunResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    success: bool = False
    error: Optional[str] = None
    artifacts: List[str] = Field(
        default_factory=list,
        description="Base64-encoded PNG images produced by the script"
    )


class CodeRunner(ABC):

    @abstractmethod
    async def run(self, code: str, input_payload: str) -> CodeRunResult:
        """
        Execute ``code`` with ``input_payload`` on stdin.

        Raises:
            CodeExecutionError: If the runner itself fails (not the script)
        """


class SubprocessCodeRunner(CodeRunner):

    def __init__(self, python_executable: Optional[str] = None, timeout: Optional[float] = None):
        self.python_executable = python_executable or sys.executable
        self.timeout = timeout if timeout is not None else settings.python_timeout_seconds

    async def run(self, code, input_payload):
        with tempfile.TemporaryDirectory(prefix="data-agent-") as workdir:
            script = Path(workdir) / "script.py"
            script.write_text(code, encoding="utf-8")
            try:
                process = await asyncio.create_subprocess_exec(
                    self.python_executable, str(script),
                    cwd=workdir,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise CodeExecutionError(f"Cannot start Python interpreter: {e}") from e

            try:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(input_payload.encode("utf-8")),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                return CodeRunResult(success=False, error=f"Execution timed out after {self.timeout}s")
            except asyncio.CancelledError:
                process.kill()
                raise

            artifacts = [
                base64.b64encode(path.read_bytes()).decode("ascii")
                for path in sorted(Path(workdir).glob("*.png"))
            ]

        result = CodeRunResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            success=process.returncode == 0,
            artifacts=artifacts,
        )
        if not result.success:
            result.error = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else (
                f"Process exited with code {process.returncode}"
            )
        logger.info(f"Python script finished: success={result.success} artifacts={len(artifacts)}")
        return result
