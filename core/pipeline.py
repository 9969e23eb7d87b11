"""
Request pipeline: an explicit, ordered list of stages around route dispatch.

Each stage's on_request returns None (continue), a Response (send it as-is) or
an AppError (send it to the error handler). Once a response exists, on_response
runs in reverse order for every stage that let the request through, so the
outermost stage post-processes last.
"""

from typing import Awaitable, Callable, Sequence

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from core.errors import AppError, ErrorHandler, UnhandledError

Dispatch = Callable[[Request], Awaitable[Response]]
StageOutcome = Response | AppError | None


class Stage:
    """Base pipeline stage. Subclasses override one or both hooks."""

    name: str = "stage"

    async def on_request(self, request: Request) -> StageOutcome:
        return None

    async def on_response(self, request: Request, response: Response) -> Response:
        return response

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"


class Pipeline:
    def __init__(self, stages: Sequence[Stage], error_handler: ErrorHandler):
        self.stages = list(stages)
        self.error_handler = error_handler

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]

    async def run(self, request: Request, dispatch: Dispatch) -> Response:
        request.state.original_url = str(request.url)
        passed: list[Stage] = []
        response: Response | None = None

        try:
            for stage in self.stages:
                outcome = await stage.on_request(request)
                if outcome is None:
                    passed.append(stage)
                    continue
                if isinstance(outcome, AppError):
                    response = self.error_handler.handle(request, outcome)
                else:
                    response = outcome
                break
            if response is None:
                response = await materialize(await dispatch(request))
        except AppError as exc:
            response = self.error_handler.handle(request, exc)
        except Exception as exc:
            response = self.error_handler.handle(
                request, UnhandledError(exc, expose_message=self.error_handler.expose_stack)
            )

        for stage in reversed(passed):
            response = await stage.on_response(request, response)
        return response


async def materialize(response: Response) -> Response:
    """
    Buffer a streamed response so later stages can read and rewrite its body.
    Raw headers are preserved except Content-Length, which is recomputed.
    """
    if hasattr(response, "body"):
        return response
    chunks = []
    async for chunk in response.body_iterator:
        chunks.append(chunk if isinstance(chunk, bytes) else chunk.encode("utf-8"))
    buffered = Response(content=b"".join(chunks), status_code=response.status_code)
    buffered.raw_headers.extend(
        (k, v) for k, v in response.raw_headers if k.lower() != b"content-length"
    )
    if response.background is not None:
        buffered.background = response.background
    return buffered


class PipelineMiddleware(BaseHTTPMiddleware):
    """Installs a Pipeline into the app; route dispatch is Starlette's call_next."""

    def __init__(self, app, pipeline: Pipeline):
        super().__init__(app)
        self.pipeline = pipeline

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        return await self.pipeline.run(request, call_next)
