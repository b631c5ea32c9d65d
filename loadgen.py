from __future__ import annotations

import asyncio
import json
import random
import time
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import httpx
import structlog

logger = structlog.get_logger()

DEFAULT_PROMPTS = (
    "你好",
    "三角函数是什么",
    "用HTML写一个简单的webgl 三角型 3D 程序",
)

SUPPORTED_APIS = ("ollama", "openai")


def now_unix_ms() -> int:
    return int(time.time() * 1000)


def _extract_prompt_from_jsonl_row(obj: Any) -> str:
    if isinstance(obj, str):
        return obj
    if not isinstance(obj, dict):
        return ""
    for key in ("prompt", "text"):
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return ""


def load_prompts_from_jsonl(prompt_file: Path) -> list[str]:
    """Read one prompt per line; JSON rows may carry a ``prompt`` or ``text`` key."""
    prompts: list[str] = []
    with prompt_file.open("r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            value = line.strip()
            if not value:
                continue
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                prompts.append(value)
                continue
            prompt = _extract_prompt_from_jsonl_row(parsed)
            if prompt:
                prompts.append(prompt)
            else:
                raise ValueError(
                    f"Unsupported prompt row at line {line_number} in {prompt_file}"
                )
    if not prompts:
        raise ValueError(f"No usable prompts found in {prompt_file}")
    return prompts


@dataclass(frozen=True)
class PromptSet:
    """Immutable set of workload units a worker picks from uniformly."""

    prompts: tuple[str, ...] = DEFAULT_PROMPTS

    def __post_init__(self) -> None:
        if not self.prompts:
            raise ValueError("prompt set cannot be empty")

    @classmethod
    def from_sources(
        cls,
        prompt_texts: Optional[Sequence[str]] = None,
        prompt_file: Optional[Path] = None,
    ) -> "PromptSet":
        prompts: list[str] = [text for text in (prompt_texts or []) if text]
        if prompt_file is not None:
            prompts.extend(load_prompts_from_jsonl(prompt_file))
        if not prompts:
            return cls()
        return cls(tuple(prompts))

    def sample(self, rng: random.Random) -> str:
        return rng.choice(self.prompts)


@dataclass
class RequestSettings:
    base_url: str
    api: str = "ollama"
    api_key: Optional[str] = None
    timeout_s: float = 60.0

    def endpoint(self) -> str:
        base = self.base_url.rstrip("/")
        if self.api == "ollama":
            return f"{base}/api/generate"
        if self.api == "openai":
            return f"{base}/v1/chat/completions"
        raise ValueError(f"Unsupported api: {self.api}")


@dataclass(frozen=True)
class IssueResult:
    """Discriminated result of one request: ``status == "ok"`` or a failure reason."""

    status: str
    elapsed_ms: float
    error: Optional[str] = None
    http_status: Optional[int] = None
    response_chars: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == "ok"


@dataclass(frozen=True)
class RequestOutcome:
    request_id: str
    workload_id: str
    worker_id: int
    start_time_unix_ms: int
    elapsed_ms: float
    status: str
    error: Optional[str]
    http_status: Optional[int]
    prompt_chars: int
    response_chars: int

    @property
    def succeeded(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["succeeded"] = self.succeeded
        return payload


class RequestIssuer(Protocol):
    async def send(self, workload_id: str, prompt: str) -> IssueResult:
        ...


def _build_payload(api: str, model: str, prompt: str) -> dict[str, Any]:
    if api == "ollama":
        return {"model": model, "prompt": prompt, "stream": False}
    return {
        "model": model,
        "messages": [{"role": "user", "content": prompt}],
        "stream": False,
    }


def _headers(api_key: Optional[str]) -> dict[str, str]:
    base = {"Content-Type": "application/json"}
    if api_key:
        base["Authorization"] = f"Bearer {api_key}"
    return base


def _response_text(api: str, body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    if api == "ollama":
        text = body.get("response")
        return text if isinstance(text, str) else None

    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first_choice = choices[0]
    if not isinstance(first_choice, dict):
        return None
    message = first_choice.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    text = first_choice.get("text")
    return text if isinstance(text, str) else ""


class HTTPRequestIssuer:
    """Sends one non-streaming generation request per call over a shared client."""

    def __init__(self, client: httpx.AsyncClient, settings: RequestSettings) -> None:
        self.client = client
        self.settings = settings
        self._url = settings.endpoint()

    async def send(self, workload_id: str, prompt: str) -> IssueResult:
        payload = _build_payload(self.settings.api, workload_id, prompt)
        started = time.perf_counter()

        def elapsed_ms() -> float:
            return (time.perf_counter() - started) * 1000.0

        try:
            response = await self.client.post(
                self._url,
                headers=_headers(self.settings.api_key),
                json=payload,
                timeout=self.settings.timeout_s,
            )
        except httpx.TimeoutException as exc:
            return IssueResult("timeout", elapsed_ms(), error=str(exc) or "timeout")
        except httpx.HTTPError as exc:
            return IssueResult("error", elapsed_ms(), error=str(exc) or type(exc).__name__)

        http_status = int(response.status_code)
        if http_status != 200:
            return IssueResult(
                "http_error",
                elapsed_ms(),
                error=f"HTTP {http_status}: {response.text[:500]}",
                http_status=http_status,
            )
        try:
            body = response.json()
        except ValueError as exc:
            return IssueResult(
                "malformed", elapsed_ms(), error=f"invalid JSON: {exc}", http_status=http_status
            )
        text = _response_text(self.settings.api, body)
        if text is None:
            return IssueResult(
                "malformed",
                elapsed_ms(),
                error="response body missing generated text",
                http_status=http_status,
            )
        return IssueResult("ok", elapsed_ms(), http_status=http_status, response_chars=len(text))


async def worker_loop(
    worker_id: int,
    workload_id: str,
    deadline: float,
    stop_event: asyncio.Event,
    prompt_set: PromptSet,
    rng: random.Random,
    issuer: RequestIssuer,
    on_outcome: Callable[[RequestOutcome], Awaitable[None]],
) -> None:
    loop = asyncio.get_running_loop()
    while not stop_event.is_set() and loop.time() < deadline:
        prompt = prompt_set.sample(rng)
        request_id = str(uuid.uuid4())
        start_time_ms = now_unix_ms()
        started = time.perf_counter()
        try:
            result = await issuer.send(workload_id, prompt)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            result = IssueResult(
                "error", (time.perf_counter() - started) * 1000.0, error=str(exc)
            )

        outcome = RequestOutcome(
            request_id=request_id,
            workload_id=workload_id,
            worker_id=worker_id,
            start_time_unix_ms=start_time_ms,
            elapsed_ms=float(result.elapsed_ms),
            status=result.status,
            error=result.error,
            http_status=result.http_status,
            prompt_chars=len(prompt),
            response_chars=result.response_chars,
        )
        if not outcome.succeeded:
            logger.debug(
                "request_failed",
                worker_id=worker_id,
                workload_id=workload_id,
                status=outcome.status,
                error=outcome.error,
            )
        await on_outcome(outcome)
        # let peer workers and the sampler run between back-to-back requests
        await asyncio.sleep(0)


async def _wait_for_workers(tasks: list[asyncio.Task[None]], timeout_s: float) -> int:
    """Wait for workers to drain, cancelling stragglers. Returns the cancelled count."""
    if not tasks:
        return 0
    done, pending = await asyncio.wait(tasks, timeout=max(0.0, timeout_s))
    if pending:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    if done:
        await asyncio.gather(*done, return_exceptions=True)
    return len(pending)


class WorkloadGenerator:
    def __init__(
        self,
        issuer: RequestIssuer,
        prompt_set: PromptSet,
        drain_timeout_s: float = 60.0,
        seed: int = 42,
    ) -> None:
        self.issuer = issuer
        self.prompt_set = prompt_set
        self.drain_timeout_s = drain_timeout_s
        self.seed = seed

    async def run(
        self,
        workload_id: str,
        concurrency: int,
        deadline: float,
        stop_event: asyncio.Event,
        on_outcome: Callable[[RequestOutcome], Awaitable[None]],
        trial_index: int = 0,
    ) -> None:
        """Run ``concurrency`` workers until ``deadline`` (loop time) or ``stop_event``.

        Returns only once every worker has exited. ``stop_event`` is set on
        return, whichever of the two ended the run.
        """
        if concurrency <= 0:
            raise ValueError(f"concurrency must be > 0, got {concurrency}")

        worker_tasks: list[asyncio.Task[None]] = []
        for worker_id in range(concurrency):
            worker_seed = self.seed + (trial_index * 100_003) + (worker_id * 971)
            worker_tasks.append(
                asyncio.create_task(
                    worker_loop(
                        worker_id=worker_id,
                        workload_id=workload_id,
                        deadline=deadline,
                        stop_event=stop_event,
                        prompt_set=self.prompt_set,
                        rng=random.Random(worker_seed),
                        issuer=self.issuer,
                        on_outcome=on_outcome,
                    )
                )
            )

        loop = asyncio.get_running_loop()
        stop_waiter = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait(
                [*worker_tasks, stop_waiter],
                timeout=max(0.0, deadline - loop.time()),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_event.set()
            stop_waiter.cancel()
            cancelled = await _wait_for_workers(worker_tasks, timeout_s=self.drain_timeout_s)

        if cancelled:
            logger.warning(
                "workers_cancelled_after_drain",
                workload_id=workload_id,
                cancelled=cancelled,
                drain_timeout_s=self.drain_timeout_s,
            )
        for task in worker_tasks:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                raise exc
