import asyncio
import time
import uuid
from enum import Enum
from typing import Optional

from icestorm_server.config import ServerSettings
from icestorm_server.errors import SynthesisError
from icestorm_server.messages import BitstreamResponse, Response, SynthesisErrorResponse, SynthesisRequest
from icestorm_server.tools.run_make import Artifact, BuildOutcome, Failure, run_make
from icestorm_server.tools.workspace import open_workspace, write_file


class JobState(str, Enum):
    CREATED = "created"
    WORKSPACE_READY = "workspace_ready"
    FILES_WRITTEN = "files_written"
    BUILDING = "building"
    COMPLETED = "completed"
    FAILED = "failed"


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex[:10]}"


class SynthesisJob:
    """Lifecycle of a single request, from workspace allocation to response."""

    def __init__(self, request: SynthesisRequest, settings: ServerSettings, job_id: Optional[str] = None):
        self.request = request
        self.settings = settings
        self.job_id = job_id or _new_job_id()
        self.state = JobState.CREATED
        self.workspace_path: Optional[str] = None
        self.outcome: Optional[BuildOutcome] = None

    @property
    def log_prefix(self) -> str:
        return f"[JOB {self.job_id}]"

    def _transition(self, state: JobState) -> None:
        print(f"{self.log_prefix} {self.state.value} -> {state.value}", flush=True)
        self.state = state

    def _fail(self, failure: Failure) -> None:
        self.outcome = failure
        self._transition(JobState.FAILED)
        print(f"{self.log_prefix} {failure.kind}: {failure.detail}", flush=True)

    async def _build(self) -> BuildOutcome:
        return await run_make(
            workspace_path=self.workspace_path,
            top_module=self.request.top_module,
            toolchain_dir=self.settings.toolchain_dir,
            command=self.settings.make_command,
            timeout=self.settings.timeout_sec,
            log_prefix=f"{self.log_prefix}[MAKE]",
        )

    async def run(self) -> Response:
        start = time.time()
        print(f"{self.log_prefix} Synthesis request: top={self.request.top_module} files={len(self.request.files)}", flush=True)
        try:
            async with open_workspace(self.settings.workspace_root, log_prefix=self.log_prefix) as workspace:
                self.workspace_path = workspace.path
                self._transition(JobState.WORKSPACE_READY)

                for f in self.request.files:
                    print(f"{self.log_prefix} Saving {f.name}", flush=True)
                    await asyncio.to_thread(write_file, workspace, f.name, f.body)
                self._transition(JobState.FILES_WRITTEN)

                self._transition(JobState.BUILDING)
                outcome = await self._build()
                if isinstance(outcome, Artifact):
                    self.outcome = outcome
                    self._transition(JobState.COMPLETED)
                else:
                    self._fail(outcome)
        except SynthesisError as e:
            self._fail(Failure.from_error(e))
        except Exception as e:
            self._fail(Failure(kind=SynthesisError.kind, detail=f"{type(e).__name__}: {e}"))

        print(f"{self.log_prefix} Finished as {self.state.value} in {time.time() - start:.2f}s", flush=True)
        return self.to_response()

    def to_response(self) -> Response:
        if isinstance(self.outcome, Artifact):
            return BitstreamResponse.from_bytes(self.outcome.data)
        if isinstance(self.outcome, Failure):
            return SynthesisErrorResponse(
                error=self.outcome.kind,
                detail=self.outcome.detail,
                exit_code=self.outcome.exit_code,
                log=self.outcome.log,
            )
        raise RuntimeError(f"{self.job_id} has no outcome in state {self.state.value}")


class SynthesisJobCoordinator:
    """
    Runs synthesis requests. Holds configuration only, so any number of
    `handle` calls can be in flight at once without sharing state.
    """

    def __init__(self, settings: ServerSettings):
        self.settings = settings

    async def handle(self, request: SynthesisRequest) -> Response:
        return await SynthesisJob(request, self.settings).run()
