"""
GUI Agent - Vision-driven action loop

Core architecture: screenshot -> VLM -> parsed actions -> operator, repeated
until the model says it is finished, asks for the user, the environment
fails, a loop cap is hit, or the caller cancels.

Key design decisions:
- one coroutine owns all run state; pause/stop only flip asyncio.Events
- per-stage retries through tenacity, never for aborts
- the in-flight model call is raced against the cancellation signal
- every state change is published as an immutable RunSnapshot
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Union

from openai import InternalServerError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
    wait_none,
)

from agent_types import (
    ACTIVE_STATUSES,
    IMAGE_PLACEHOLDER,
    MAX_IMAGE_LENGTH,
    MAX_LOOP_COUNT,
    MAX_SNAPSHOT_ERR_CNT,
    AbortError,
    Conversation,
    ErrorStatusEnum,
    ExecuteOutput,
    ExecuteParams,
    GUIAgentError,
    InternalActionType,
    InvokeOutput,
    InvokeParams,
    PredictionParsed,
    RetryConfig,
    RetryPolicy,
    RunSnapshot,
    ScreenContext,
    ScreenshotResult,
    StatusEnum,
    Timing,
    UITarsModelVersion,
)
from desktop_operator import Operator
from vlm_model import Model, ModelConfig, UITarsModel
from vlm_utils import get_summary, inspect_image, process_vlm_params, to_vlm_model_format

logger = logging.getLogger(__name__)

_ABORT_ERRORS = (AbortError,)

OnData  = Callable[[RunSnapshot], Union[None, Awaitable[None]]]
OnError = Callable[[RunSnapshot, GUIAgentError], Union[None, Awaitable[None]]]


# ============================================================================
# System prompts
# ============================================================================

SYSTEM_PROMPT_TEMPLATE = """You are a GUI agent. You are given a task and your action history, with screenshots. You need to perform the next action to complete the task.

## Output Format
```
Thought: ...
Action: ...
```

## Action Space
{action_spaces}

## Note
- Use {language} in `Thought` part.
- Write a small plan and finally summarize your next action (with its target element) in one sentence in `Thought` part.

## User Instruction
"""

DEFAULT_ACTION_SPACES = [
    "click(start_box='[x1, y1, x2, y2]')",
    "left_double(start_box='[x1, y1, x2, y2]')",
    "right_single(start_box='[x1, y1, x2, y2]')",
    "drag(start_box='[x1, y1, x2, y2]', end_box='[x3, y3, x4, y4]')",
    "hotkey(key='')",
    "type(content='') #If you want to submit your input, use \"\\n\" at the end of `content`.",
    "scroll(start_box='[x1, y1, x2, y2]', direction='down or up or right or left')",
    "wait() #Sleep for 5s and take a screenshot to check for any changes.",
    "finished()",
    "call_user() # Submit the task and call the user when the task is unsolvable, or when you need the user's help.",
]

SYSTEM_PROMPT = SYSTEM_PROMPT_TEMPLATE.format(
    action_spaces="\n".join(DEFAULT_ACTION_SPACES),
    language="English",
)


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


# ============================================================================
# GUI Agent
# ============================================================================

class GUIAgent:
    """Drives one operator with one model until a terminal status is reached.

    ``run()`` returns normally for END, CALL_USER, USER_STOPPED, MAX_LOOP and
    environment errors; stage failures that exhaust their retries and
    unexpected exceptions are raised after the final snapshot and
    ``on_error`` were delivered.
    """

    def __init__(
        self,
        operator: Operator,
        model: Union[Model, ModelConfig],
        system_prompt: Optional[str] = None,
        signal: Optional[asyncio.Event] = None,
        max_loop_count: int = MAX_LOOP_COUNT,
        loop_interval_ms: int = 0,
        retry: Optional[RetryConfig] = None,
        on_data: Optional[OnData] = None,
        on_error: Optional[OnError] = None,
        ui_tars_version: Optional[UITarsModelVersion] = None,
        max_image_length: int = MAX_IMAGE_LENGTH,
        screenshot_retry_delay_ms: int = 1000,
        event_queue: Optional[asyncio.Queue] = None,
        language: str = "English",
    ):
        self.operator         = operator
        self.model            = model if isinstance(model, Model) else UITarsModel(model)
        self.signal           = signal if signal is not None else asyncio.Event()
        self.max_loop_count   = max_loop_count
        self.loop_interval_ms = loop_interval_ms
        self.retry            = retry or RetryConfig()
        self.on_data          = on_data
        self.on_error         = on_error
        self.ui_tars_version  = ui_tars_version
        self.max_image_length = max_image_length
        self.screenshot_retry_delay_ms = screenshot_retry_delay_ms
        self.event_queue      = event_queue
        self.language         = language
        self.system_prompt    = system_prompt or self._build_system_prompt()

        self._resume = asyncio.Event()
        self._resume.set()
        self._paused = False

        # Run state (reset by every run())
        self.instruction    = ""
        self.status         = StatusEnum.INIT
        self.error: Optional[GUIAgentError] = None
        self.conversations: list[Conversation] = []
        self.loop_count     = 0
        self.log_time       = 0

    # ------------------------------------------------------------------ #
    #  Caller controls                                                     #
    # ------------------------------------------------------------------ #

    def pause(self) -> None:
        self._paused = True
        self._resume.clear()

    def resume(self) -> None:
        self._paused = False
        self._resume.set()

    def stop(self) -> None:
        self.signal.set()

    @property
    def is_paused(self) -> bool:
        return self._paused

    # ------------------------------------------------------------------ #
    #  Main loop                                                           #
    # ------------------------------------------------------------------ #

    async def run(self, instruction: str) -> None:
        operator, model = self.operator, self.model

        self.instruction   = instruction
        self.log_time      = _now_ms()
        self.status        = StatusEnum.INIT
        self.error         = None
        self.loop_count    = 0
        self.conversations = [Conversation(
            origin="human",
            value=instruction,
            timing=Timing(self.log_time, self.log_time, 0),
        )]
        model.reset()

        logger.info(
            f"[GUIAgent] run:\nsystem prompt: {self.system_prompt},\n"
            f"model version: {self.ui_tars_version}, model: {model.model_name}"
        )

        snapshot_err_cnt = 0
        total_tokens = 0
        total_time = 0

        self.status = StatusEnum.RUNNING
        await self._emit([])

        try:
            while True:
                logger.info(f"[GUIAgent] loopCnt: {self.loop_count}")

                if self._paused:
                    self.status = StatusEnum.PAUSED
                    await self._emit([])
                    await self._until_cancelled(self._resume.wait())
                    self.status = StatusEnum.RUNNING
                    await self._emit([])

                if self.status not in ACTIVE_STATUSES:
                    break
                if self.signal.is_set():
                    self.status = StatusEnum.USER_STOPPED
                    break

                if self.loop_count >= self.max_loop_count:
                    self.status = StatusEnum.MAX_LOOP
                    self.error = self._error_parser(ErrorStatusEnum.REACH_MAXLOOP_ERROR)
                    break
                if snapshot_err_cnt >= MAX_SNAPSHOT_ERR_CNT:
                    self.status = StatusEnum.MAX_LOOP
                    self.error = self._error_parser(ErrorStatusEnum.SCREENSHOT_RETRY_ERROR)
                    break

                start = _now_ms()
                snapshot: ScreenshotResult = await self._with_retry(
                    operator.screenshot, self.retry.screenshot,
                    ErrorStatusEnum.SCREENSHOT_RETRY_ERROR,
                )

                width, height, mime = inspect_image(snapshot.base64) if snapshot and snapshot.base64 else (None, None, "")
                declared_ok = snapshot is not None and all(
                    d is None or d > 0 for d in (snapshot.width, snapshot.height)
                )
                if not (width and height and declared_ok):
                    # Not a loop: transient capture glitches get bounded free retries
                    snapshot_err_cnt += 1
                    logger.warning(f"[GUIAgent] invalid screenshot ({snapshot_err_cnt}/{MAX_SNAPSHOT_ERR_CNT})")
                    await asyncio.sleep(self.screenshot_retry_delay_ms / 1000)
                    continue

                self.loop_count += 1
                end = _now_ms()
                ctx = ScreenContext(
                    width=width,
                    height=height,
                    scale_factor=snapshot.scale_factor,
                    mime=mime,
                )
                await self._append(Conversation(
                    origin="human",
                    value=IMAGE_PLACEHOLDER,
                    screenshot_base64=snapshot.base64,
                    screenshot_context=ctx,
                    timing=Timing(start, end, end - start),
                ))

                if self.signal.is_set():
                    raise AbortError("request was aborted")

                messages, images = to_vlm_model_format(self.conversations, self.system_prompt)
                messages, images = process_vlm_params(messages, images, self.max_image_length)
                params = InvokeParams(
                    conversations=messages,
                    images=images,
                    screen_context=ctx,
                    scale_factor=snapshot.scale_factor,
                    ui_tars_version=self.ui_tars_version,
                )
                output: InvokeOutput = await self._with_retry(
                    lambda: self._until_cancelled(model.invoke(params, signal=self.signal)),
                    self.retry.model,
                    ErrorStatusEnum.INVOKE_RETRY_ERROR,
                )

                total_tokens += output.cost_tokens or 0
                total_time += output.cost_time or 0
                logger.info(
                    f"[GUIAgent] consumes: >>> costTime: {output.cost_time}, "
                    f"costTokens: {output.cost_tokens} <<<"
                )
                logger.info(f"[GUIAgent] Response: {output.prediction}")
                logger.info(f"[GUIAgent] Parsed Predictions: {output.parsed_predictions}")

                if not output.prediction:
                    logger.error("[GUIAgent] Response Empty")
                    continue

                end = _now_ms()
                await self._append(Conversation(
                    origin="gpt",
                    value=get_summary(output.prediction),
                    screenshot_context=ctx,
                    timing=Timing(start, end, end - start),
                    prediction_parsed=tuple(output.parsed_predictions),
                ))

                await self._dispatch(output, ctx)

                if self.loop_interval_ms > 0:
                    logger.info(f"[GUIAgent] sleep for {self.loop_interval_ms}ms before next loop")
                    await asyncio.sleep(self.loop_interval_ms / 1000)

        except _ABORT_ERRORS:
            logger.info("[GUIAgent] Catch: request was aborted")
            self.status = StatusEnum.USER_STOPPED
        except asyncio.CancelledError:
            self.status = StatusEnum.USER_STOPPED
            raise
        except GUIAgentError as e:
            logger.error(f"[GUIAgent] Catch error: {e!r}")
            self.status = StatusEnum.ERROR
            self.error = e
            raise
        except Exception as e:
            logger.exception("[GUIAgent] Catch error")
            self.status = StatusEnum.ERROR
            self.error = self._error_parser(ErrorStatusEnum.UNKNOWN_ERROR, e)
            raise
        finally:
            logger.info(f"[GUIAgent] Finally: status {self.status.value}")

            if self.status == StatusEnum.USER_STOPPED:
                await self._release_environment()

            await self._emit([])

            if self.status == StatusEnum.ERROR:
                error = self.error or GUIAgentError(ErrorStatusEnum.UNKNOWN_ERROR, "Unknown error occurred")
                if self.on_error:
                    await _maybe_await(self.on_error(self._snapshot([]), error))

            logger.info(
                f"[GUIAgent] >>> totalTokens: {total_tokens}, totalTime: {total_time}, "
                f"loopCnt: {self.loop_count} <<<"
            )

    async def _dispatch(self, output: InvokeOutput, ctx: ScreenContext) -> None:
        """Execute the parsed actions of one response in order."""
        for parsed in output.parsed_predictions:
            action_type = parsed.action_type
            logger.info(f"[GUIAgent] Action: {action_type}")

            if action_type == InternalActionType.ERROR_ENV.value:
                self.status = StatusEnum.ERROR
                self.error = self._error_parser(ErrorStatusEnum.ENVIRONMENT_ERROR)
                break
            if action_type == InternalActionType.MAX_LOOP.value:
                self.status = StatusEnum.MAX_LOOP
                self.error = self._error_parser(ErrorStatusEnum.REACH_MAXLOOP_ERROR)
                break

            if not self.signal.is_set():
                logger.info(f"[GUIAgent] Action Inputs: {parsed.action_inputs} {action_type}")
                params = ExecuteParams(
                    parsed_prediction=parsed,
                    screen_width=ctx.width,
                    screen_height=ctx.height,
                    scale_factor=ctx.scale_factor,
                    factors=self.model.factors,
                    prediction=output.prediction,
                )
                result: Optional[ExecuteOutput] = await self._with_retry(
                    lambda: self.operator.execute(params),
                    self.retry.execute,
                    ErrorStatusEnum.EXECUTE_RETRY_ERROR,
                )
                if result is not None:
                    if result.unsupported:
                        logger.warning(f"[GUIAgent] operator does not support {action_type!r}")
                    if result.status:
                        self.status = result.status

            if action_type == InternalActionType.CALL_USER.value:
                self.status = StatusEnum.CALL_USER
                break
            if action_type == InternalActionType.FINISHED.value:
                self.status = StatusEnum.END
                break

    async def _release_environment(self) -> None:
        """Let the operator drop held state (e.g. a drag in progress) after a stop."""
        params = ExecuteParams(
            parsed_prediction=PredictionParsed(action_type=InternalActionType.USER_STOP.value),
            screen_width=0,
            screen_height=0,
            scale_factor=1,
            factors=self.model.factors,
        )
        try:
            await self.operator.execute(params)
        except Exception:
            logger.exception("[GUIAgent] user_stop execute failed")

    # ------------------------------------------------------------------ #
    #  Stages                                                              #
    # ------------------------------------------------------------------ #

    async def _with_retry(self, call: Callable[[], Awaitable[Any]],
                          policy: RetryPolicy, code: ErrorStatusEnum) -> Any:
        """Run one stage under its RetryPolicy.

        Aborts are raised untouched; cancellation stops further attempts;
        exhaustion is raised as a GUIAgentError carrying ``code``.
        """
        def should_retry(exc: BaseException) -> bool:
            return not isinstance(exc, _ABORT_ERRORS) and not self.signal.is_set()

        def before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception()
            logger.warning(f"[GUIAgent] {code.value} attempt {state.attempt_number} failed: {exc}")
            if policy.on_retry:
                policy.on_retry(exc, state.attempt_number)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_retries + 1),
            wait=wait_fixed(policy.wait_seconds) if policy.wait_seconds > 0 else wait_none(),
            retry=retry_if_exception(should_retry),
            before_sleep=before_sleep,
            reraise=True,
        )
        try:
            return await retrying(call)
        except _ABORT_ERRORS:
            raise
        except Exception as e:
            if self.signal.is_set():
                raise AbortError("request was aborted") from e
            raise self._error_parser(code, e) from e

    async def _until_cancelled(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` unless the cancellation signal fires first."""
        if self.signal.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise AbortError("request was aborted")
        task = asyncio.ensure_future(awaitable)
        stopper = asyncio.ensure_future(self.signal.wait())
        try:
            done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (task, stopper):
                if not fut.done():
                    fut.cancel()
            await asyncio.gather(task, stopper, return_exceptions=True)
        if task in done and not task.cancelled():
            return task.result()
        raise AbortError("request was aborted")

    # ------------------------------------------------------------------ #
    #  Events                                                              #
    # ------------------------------------------------------------------ #

    def _snapshot(self, turns: list[Conversation]) -> RunSnapshot:
        return RunSnapshot(
            instruction=self.instruction,
            status=self.status,
            system_prompt=self.system_prompt,
            model_name=self.model.model_name,
            log_time=self.log_time,
            loop_count=self.loop_count,
            conversations=tuple(turns),
            error=self.error,
        )

    async def _emit(self, turns: list[Conversation]) -> None:
        snapshot = self._snapshot(turns)
        if self.event_queue is not None:
            self.event_queue.put_nowait(snapshot)
        if self.on_data:
            await _maybe_await(self.on_data(snapshot))

    async def _append(self, turn: Conversation) -> None:
        self.conversations.append(turn)
        await self._emit([turn])

    # ------------------------------------------------------------------ #
    #  Helpers                                                             #
    # ------------------------------------------------------------------ #

    def _build_system_prompt(self) -> str:
        action_spaces = getattr(type(self.operator), "ACTION_SPACES", None)
        if not action_spaces:
            return SYSTEM_PROMPT
        return SYSTEM_PROMPT_TEMPLATE.format(
            action_spaces="\n".join(action_spaces),
            language=self.language,
        )

    def _error_parser(self, code: ErrorStatusEnum,
                      error: Optional[BaseException] = None) -> GUIAgentError:
        if isinstance(error, GUIAgentError):
            return error
        if isinstance(error, InternalServerError):
            return GUIAgentError.from_exception(ErrorStatusEnum.MODEL_SERVICE_ERROR, "", error)

        prefixes = {
            ErrorStatusEnum.REACH_MAXLOOP_ERROR:    "Has reached max loop count: ",
            ErrorStatusEnum.SCREENSHOT_RETRY_ERROR: "Too many screenshot failures: ",
            ErrorStatusEnum.INVOKE_RETRY_ERROR:     "Too many model invoke failures: ",
            ErrorStatusEnum.EXECUTE_RETRY_ERROR:    "Too many action execute failures: ",
            ErrorStatusEnum.ENVIRONMENT_ERROR:      "The environment error occurred when parsing the action: ",
        }
        if code in prefixes:
            return GUIAgentError.from_exception(code, prefixes[code], error)
        return GUIAgentError.from_exception(
            ErrorStatusEnum.UNKNOWN_ERROR,
            "" if error is not None else "Unknown error occurred",
            error,
        )
