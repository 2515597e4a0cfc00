"""
GUI Agent - Shared types and constants

Everything the loop controller, the model adapter and the operators exchange
lives here so none of them has to import the others.
"""

import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional


# ============================================================================
# Constants
# ============================================================================

IMAGE_PLACEHOLDER    = "<image>"
MAX_LOOP_COUNT       = 25
MAX_SNAPSHOT_ERR_CNT = 10
MAX_IMAGE_LENGTH     = 5

# [widthFactor, heightFactor]: coordinate space the model was trained on
DEFAULT_FACTORS: tuple[int, int] = (1000, 1000)

IMAGE_FACTOR      = 28
MIN_PIXELS        = 100 * IMAGE_FACTOR * IMAGE_FACTOR
MAX_RATIO         = 200
MAX_PIXELS_V1_0   = 2700 * IMAGE_FACTOR * IMAGE_FACTOR
MAX_PIXELS_V1_5   = 16384 * IMAGE_FACTOR * IMAGE_FACTOR
MAX_PIXELS_DOUBAO = 2764800


# ============================================================================
# Enums
# ============================================================================

class StatusEnum(str, Enum):
    INIT         = "init"
    RUNNING      = "running"
    PAUSED       = "paused"
    END          = "end"
    CALL_USER    = "call_user"
    USER_STOPPED = "user_stopped"
    MAX_LOOP     = "max_loop"
    ERROR        = "error"


# Only these keep the main loop alive
ACTIVE_STATUSES = (StatusEnum.RUNNING, StatusEnum.PAUSED)


class ErrorStatusEnum(str, Enum):
    SCREENSHOT_RETRY_ERROR = "screenshot_retry_error"
    INVOKE_RETRY_ERROR     = "invoke_retry_error"
    EXECUTE_RETRY_ERROR    = "execute_retry_error"
    MODEL_SERVICE_ERROR    = "model_service_error"
    ENVIRONMENT_ERROR      = "environment_error"
    REACH_MAXLOOP_ERROR    = "reach_maxloop_error"
    UNKNOWN_ERROR          = "unknown_error"


class UITarsModelVersion(str, Enum):
    V1_0           = "1.0"
    V1_5           = "1.5"
    DOUBAO_1_5_15B = "doubao-1.5-15B"
    DOUBAO_1_5_20B = "doubao-1.5-20B"


class InternalActionType(str, Enum):
    """Action types the controller itself gives meaning to."""
    FINISHED  = "finished"
    CALL_USER = "call_user"
    ERROR_ENV = "error_env"
    MAX_LOOP  = "max_loop"
    USER_STOP = "user_stop"


# ============================================================================
# Errors
# ============================================================================

class AbortError(Exception):
    """Raised when the run's cancellation signal fires during a stage."""


class GUIAgentError(Exception):

    def __init__(self, code: ErrorStatusEnum, message: str = "", stack: Optional[str] = None):
        super().__init__(message)
        self.code    = code
        self.message = message
        self.stack   = stack

    @classmethod
    def from_exception(cls, code: ErrorStatusEnum, prefix: str,
                       error: Optional[BaseException] = None) -> "GUIAgentError":
        detail = str(error) if error is not None else ""
        stack = None
        if error is not None and error.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return cls(code, f"{prefix}{detail}", stack)

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message, "stack": self.stack}

    def __repr__(self) -> str:
        return f"GUIAgentError(code={self.code.value!r}, message={self.message!r})"


# ============================================================================
# Screen / conversation data
# ============================================================================

@dataclass(frozen=True)
class ScreenshotResult:
    base64:       str
    width:        Optional[int] = None
    height:       Optional[int] = None
    scale_factor: float         = 1.0


@dataclass(frozen=True)
class ScreenContext:
    width:        int
    height:       int
    scale_factor: float = 1.0
    mime:         str   = "image/png"


@dataclass(frozen=True)
class Timing:
    start: int
    end:   int
    cost:  int


@dataclass
class PredictionParsed:
    action_type:   str
    action_inputs: dict           = field(default_factory=dict)
    thought:       str            = ""
    reflection:    Optional[str]  = None


@dataclass(frozen=True)
class Conversation:
    """One turn. ``origin`` is ``human`` (instruction or screenshot) or ``gpt``."""
    origin:             str
    value:              str
    screenshot_base64:  Optional[str]           = None
    screenshot_context: Optional[ScreenContext] = None
    timing:             Optional[Timing]        = None
    prediction_parsed:  tuple                   = ()

    @property
    def is_image(self) -> bool:
        return self.value == IMAGE_PLACEHOLDER


@dataclass(frozen=True)
class Message:
    """Text-level view of a turn as the model sees it."""
    origin: str
    value:  str


# ============================================================================
# Collaborator contracts
# ============================================================================

@dataclass(frozen=True)
class ExecuteParams:
    parsed_prediction: PredictionParsed
    screen_width:      int
    screen_height:     int
    scale_factor:      float           = 1.0
    factors:           tuple[int, int] = DEFAULT_FACTORS
    prediction:        str             = ""


@dataclass(frozen=True)
class ExecuteOutput:
    status:      Optional[StatusEnum] = None
    unsupported: bool                 = False


@dataclass(frozen=True)
class InvokeParams:
    conversations:  list
    images:         list
    screen_context: ScreenContext
    scale_factor:   float                        = 1.0
    ui_tars_version: Optional[UITarsModelVersion] = None


@dataclass(frozen=True)
class InvokeOutput:
    prediction:         str
    parsed_predictions: list           = field(default_factory=list)
    cost_time:          Optional[int]  = None
    cost_tokens:        Optional[int]  = None


@dataclass(frozen=True)
class RetryPolicy:
    max_retries:  int                                          = 0
    on_retry:     Optional[Callable[[BaseException, int], Any]] = None
    wait_seconds: float                                        = 0.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")


@dataclass(frozen=True)
class RetryConfig:
    screenshot: RetryPolicy = RetryPolicy()
    model:      RetryPolicy = RetryPolicy()
    execute:    RetryPolicy = RetryPolicy()


# ============================================================================
# Run snapshot (what callers receive)
# ============================================================================

@dataclass(frozen=True)
class RunSnapshot:
    instruction:   str
    status:        StatusEnum
    system_prompt: str
    model_name:    str
    log_time:      int
    loop_count:    int                     = 0
    conversations: tuple                   = ()
    error:         Optional[GUIAgentError] = None
