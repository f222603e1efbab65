"""External tool runner with output verification, timeouts and cancellation.

The reconstruction tool may exit 0 without writing its model, or exit non-zero
after writing part of it, so success is exit code zero AND the expected output
present on disk.

Key Features:
- Argument-vector invocation from the tool directory (no shell)
- Wall-clock ceiling with process tree cleanup (SIGTERM, grace, SIGKILL)
- Cooperative cancellation through a threading.Event set on shutdown
- Artifact preservation on failure (error log + reproducible command script)
"""

import logging
import os
import shlex
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import psutil

from .errors import OutputMissing, ProcessError, ToolCancelled, ToolTimeout
from .models import ToolsConfig

logger = logging.getLogger(__name__)

USDZ_SUFFIX = ".usdz"


@dataclass
class ToolResult:
    """Result of a successful tool execution."""
    command: List[str]
    returncode: int
    stdout: str
    stderr: str
    duration_s: float
    output_path: Optional[Path] = None
    artifacts_saved: List[Path] = field(default_factory=list)


class ToolRunner:
    """Run the reconstruction and conversion executables.

    Example:
        >>> runner = ToolRunner(lib_dir="lib", timeout_s=3600)
        >>> result = runner.build_model(
        ...     image_dir="projects/42/images",
        ...     output_base="projects/42/model/model",
        ...     detail="reduced", ordering="unordered", feature="normal",
        ... )
        >>> result.output_path
        PosixPath('projects/42/model/model.usdz')
    """

    def __init__(
        self,
        lib_dir: str,
        build_executable: str = "HelloPhotogrammetry",
        convert_executable: str = "usdconv",
        timeout_s: Optional[int] = None,
        convert_timeout_s: Optional[int] = None,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        artifacts_dir: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        poll_interval_s: float = 1.0,
    ):
        """Initialize tool runner.

        Args:
            lib_dir: Directory holding the executables; also the working directory
            build_executable: Reconstruction tool file name
            convert_executable: Conversion tool file name
            timeout_s: Default wall-clock ceiling (None = unbounded)
            convert_timeout_s: Ceiling for the conversion tool
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save logs and commands on failure
            artifacts_dir: Directory for failure artifacts (None = system temp)
            cancel_event: Set by the consumer on shutdown to abort the running tool
            poll_interval_s: How often the deadline and cancel event are checked
        """
        self.lib_dir = Path(lib_dir)
        self.build_executable = build_executable
        self.convert_executable = convert_executable
        self.timeout_s = timeout_s
        self.convert_timeout_s = convert_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.artifacts_dir = artifacts_dir
        self.cancel_event = cancel_event or threading.Event()
        self.poll_interval_s = poll_interval_s

    @classmethod
    def from_config(
        cls, config: ToolsConfig, cancel_event: Optional[threading.Event] = None
    ) -> "ToolRunner":
        return cls(
            lib_dir=config.lib_dir,
            build_executable=config.build_executable,
            convert_executable=config.convert_executable,
            timeout_s=config.build_timeout_s,
            convert_timeout_s=config.convert_timeout_s,
            kill_grace_period_s=config.kill_grace_period_s,
            save_artifacts_on_failure=config.save_artifacts_on_failure,
            artifacts_dir=config.artifacts_dir,
            cancel_event=cancel_event,
        )

    def build_model(
        self,
        image_dir: Path,
        output_base: Path,
        detail: str,
        ordering: str,
        feature: str,
    ) -> ToolResult:
        """Reconstruct a model from staged images.

        Invoked as `<imageDir> <outputBase>.usdz -d <detail> -o <ordering> -f <feature>`.

        Raises:
            ProcessError, OutputMissing, ToolTimeout, ToolCancelled
        """
        model_path = Path(f"{output_base}{USDZ_SUFFIX}")
        model_path.unlink(missing_ok=True)
        args = [
            str(Path(image_dir).resolve()),
            str(model_path.resolve()),
            "-d", detail,
            "-o", ordering,
            "-f", feature,
        ]
        return self.run(self.build_executable, args, expected_output=model_path)

    def convert_model(self, model_base: Path) -> ToolResult:
        """Transcode `<modelBase>.usdz` into the additional distribution formats.

        Only the exit code is checked.
        """
        model_path = Path(f"{model_base}{USDZ_SUFFIX}")
        return self.run(
            self.convert_executable,
            [str(model_path.resolve())],
            timeout_s=self.convert_timeout_s,
        )

    def check_executable(self, name: str) -> bool:
        """True if lib_dir/name exists and is executable."""
        path = self.lib_dir / name
        return path.is_file() and os.access(path, os.X_OK)

    def run(
        self,
        executable: str,
        args: List[str],
        expected_output: Optional[Path] = None,
        timeout_s: Optional[int] = None,
    ) -> ToolResult:
        """Execute a tool from lib_dir and verify its outcome.

        Args:
            executable: File name inside lib_dir
            args: Argument vector (no shell interpretation)
            expected_output: File that must exist after a zero exit
            timeout_s: Override of the default ceiling

        Returns:
            ToolResult on success

        Raises:
            ProcessError: Non-zero exit (message = captured stderr)
            OutputMissing: Zero exit but expected_output absent
            ToolTimeout: Ceiling exceeded, process tree killed
            ToolCancelled: Cancel event set, process tree killed
        """
        cmd = [f"./{executable}"] + [str(a) for a in args]
        ceiling = timeout_s if timeout_s is not None else self.timeout_s
        start_time = time.time()
        deadline = start_time + ceiling if ceiling else None

        if self.cancel_event.is_set():
            raise ToolCancelled(f"{executable} not started: worker is shutting down", command=cmd)

        logger.info("running %s", shlex.join(cmd))

        process = subprocess.Popen(
            cmd,
            cwd=str(self.lib_dir),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            start_new_session=True,
        )

        stopped_by: Optional[str] = None
        try:
            while True:
                try:
                    stdout, stderr = process.communicate(timeout=self.poll_interval_s)
                    break
                except subprocess.TimeoutExpired:
                    pass

                if self.cancel_event.is_set():
                    stopped_by = "cancelled"
                elif deadline is not None and time.time() >= deadline:
                    stopped_by = "timeout"
                if stopped_by:
                    stdout, stderr = self._kill_process_tree(process)
                    break
        except BaseException:
            self._kill_process_tree(process)
            raise

        returncode = process.returncode
        duration = time.time() - start_time
        stdout = stdout or ""
        stderr = stderr or ""

        if stopped_by or returncode != 0:
            artifacts = self._artifacts(cmd, stdout, stderr)
            details = dict(command=cmd, returncode=returncode, stderr=stderr, artifacts=artifacts)
            if stopped_by == "cancelled":
                raise ToolCancelled(f"{executable} cancelled after {duration:.0f}s", **details)
            if stopped_by == "timeout":
                raise ToolTimeout(f"{executable} exceeded {ceiling}s and was killed", **details)
            raise ProcessError(stderr.strip() or f"{executable} exited with {returncode}", **details)

        if expected_output is not None and not Path(expected_output).exists():
            artifacts = self._artifacts(cmd, stdout, stderr)
            raise OutputMissing(
                f"{executable} exited 0 but {expected_output} was not written",
                command=cmd, returncode=returncode, stderr=stderr, artifacts=artifacts,
            )

        logger.info("%s finished in %.1fs", executable, duration)
        return ToolResult(
            command=cmd,
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
            duration_s=duration,
            output_path=Path(expected_output) if expected_output is not None else None,
        )

    def _kill_process_tree(self, process: subprocess.Popen) -> Tuple[str, str]:
        """Kill the tool and all its children.

        Kill sequence:
        1. SIGTERM to every process in the tree
        2. Wait grace period
        3. SIGKILL survivors
        4. Collect stdout/stderr
        """
        try:
            parent = psutil.Process(process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            procs = []

        for p in procs:
            try:
                p.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for p in alive:
            try:
                p.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            stdout, stderr = process.communicate(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            process.kill()
            stdout, stderr = process.communicate()
        return stdout or "", stderr or ""

    def _artifacts(self, cmd: List[str], stdout: str, stderr: str) -> List[Path]:
        if not self.save_artifacts_on_failure:
            return []
        return self._save_failure_artifacts(cmd, stdout, stderr)

    def _save_failure_artifacts(self, cmd: List[str], stdout: str, stderr: str) -> List[Path]:
        """Save debugging artifacts on tool failure.

        Creates:
        - tool_error_{timestamp}.log: Command + stdout + stderr
        - tool_cmd_{timestamp}.sh: Reproducible command script
        """
        artifacts = []
        artifacts_dir = self._get_artifacts_dir()
        timestamp = int(time.time())

        log_path = artifacts_dir / f"tool_error_{timestamp}.log"
        try:
            with open(log_path, "w") as f:
                f.write("=" * 80 + "\n")
                f.write(f"Tool Error Log\nTimestamp: {time.ctime()}\nPID: {os.getpid()}\n")
                f.write("=" * 80 + "\n\n")
                f.write(f"COMMAND:\n{shlex.join(cmd)}\n\n")
                f.write(f"STDOUT:\n{stdout or '(empty)'}\n\n")
                f.write(f"STDERR:\n{stderr or '(empty)'}\n")
            artifacts.append(log_path)
        except OSError as e:
            logger.warning("failed to save tool error log: %s", e)

        script_path = artifacts_dir / f"tool_cmd_{timestamp}.sh"
        try:
            with open(script_path, "w") as f:
                f.write("#!/bin/bash\n")
                f.write(f"# Generated: {time.ctime()}\n\n")
                f.write(f"cd {shlex.quote(str(self.lib_dir.resolve()))}\n")
                f.write(" \\\n  ".join(shlex.quote(arg) for arg in cmd) + "\n")
            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError as e:
            logger.warning("failed to save tool command script: %s", e)

        return artifacts

    def _get_artifacts_dir(self) -> Path:
        artifacts_dir = Path(self.artifacts_dir) if self.artifacts_dir else Path(tempfile.gettempdir())
        artifacts_dir.mkdir(parents=True, exist_ok=True)
        return artifacts_dir
