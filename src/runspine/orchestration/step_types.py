"""Step Types — the typed, immutable step model of a runbook.

Manifesto:
A runbook is a tree of steps, and each step kind carries a different
configuration.  Modelling the kinds as one frozen dataclass per kind (a
closed union, ``Step``) lets the executor registry dispatch on
``step.kind`` and lets every executor read a typed ``step.config`` instead
of poking at raw dictionaries.

ARCHITECTURE
────────────
::

    Step = HttpStep | SqlStep | ShellStep | ScriptStep | ManualStep
         | ConditionalStep | AiStep | WaitStep | ParallelStep

    BaseStep         ── id, name, continue_on_error, timeout, retry knobs
      .children      ── nested steps (CONDITIONAL branches, PARALLEL steps)

    StepPlan         ── flat pre-order index of every step in the tree
      .index_of(id)  ── flat index of a step
      .size_of(step) ── number of steps in a subtree (step included)

    count_steps()    ── flattened step count (``Execution.total_steps``)
    iter_steps()     ── pre-order walk

Steps are parsed once from the stored document by
:mod:`runspine.orchestration.runbook_spec`; the tree is acyclic by
construction.

Tags:
    runspine, orchestration, step-types, tagged-union

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union


class StepKind(str, Enum):
    """Kind of runbook step."""

    HTTP = "HTTP"
    SQL = "SQL"
    SHELL = "SHELL"  # reserved, requires sandboxing
    SCRIPT = "SCRIPT"  # reserved, requires sandboxing
    MANUAL = "MANUAL"
    CONDITIONAL = "CONDITIONAL"
    AI = "AI"
    WAIT = "WAIT"
    PARALLEL = "PARALLEL"


CONTAINER_KINDS: frozenset[StepKind] = frozenset({StepKind.CONDITIONAL, StepKind.PARALLEL})


# =============================================================================
# Kind-specific configuration
# =============================================================================


@dataclass(frozen=True)
class HttpAuth:
    type: str  # bearer | basic | apikey
    token: str | None = None
    username: str | None = None
    password: str | None = None
    api_key: str | None = None
    api_key_header: str = "X-API-Key"


@dataclass(frozen=True)
class ResponseAssertion:
    """Dotted path into the JSON response and the value expected there."""

    json_path: str
    expected_value: Any = None


@dataclass(frozen=True)
class HttpConfig:
    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    auth: HttpAuth | None = None
    expected_status_codes: tuple[int, ...] = (200, 201, 204)
    validate_response: ResponseAssertion | None = None


@dataclass(frozen=True)
class ResultAssertion:
    column: str
    expected_value: Any = None


@dataclass(frozen=True)
class SqlConfig:
    query: str
    connection_string: str | None = None
    secret_name: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    expected_row_count: int | None = None
    validate_result: ResultAssertion | None = None


@dataclass(frozen=True)
class ShellConfig:
    command: str
    args: tuple[str, ...] = ()
    working_directory: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    expected_exit_code: int = 0


@dataclass(frozen=True)
class ScriptConfig:
    runtime: str
    code: str
    entrypoint: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ManualConfig:
    approvers: tuple[str, ...]
    instructions: str = ""
    require_all_approvers: bool = False
    expires_after: int | None = None  # seconds


@dataclass(frozen=True)
class Condition:
    """Boolean condition evaluated by a CONDITIONAL step.

    ``type`` is one of ``expression``, ``previous_step_status`` or
    ``variable_check``.
    """

    type: str
    expression: str | None = None
    step_id: str | None = None
    expected_status: str | None = None
    variable: str | None = None
    operator: str = "=="
    value: Any = None


@dataclass(frozen=True)
class ConditionalConfig:
    condition: Condition
    on_true: tuple[Step, ...] = ()
    on_false: tuple[Step, ...] = ()


@dataclass(frozen=True)
class AiContextOptions:
    include_step_results: bool = False
    include_logs: bool = False
    include_variables: bool = False


@dataclass(frozen=True)
class AiConfig:
    prompt: str
    action: str = "analyze"  # analyze | generate | suggest | summarize
    context: AiContextOptions = field(default_factory=AiContextOptions)
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass(frozen=True)
class WaitConfig:
    duration: float  # seconds
    reason: str | None = None


@dataclass(frozen=True)
class ParallelConfig:
    steps: tuple[Step, ...] = ()
    wait_for_all: bool = True
    fail_on_any_error: bool = False


# =============================================================================
# Steps
# =============================================================================


@dataclass(frozen=True, kw_only=True)
class BaseStep:
    """Fields shared by every step kind."""

    kind: ClassVar[StepKind]

    id: str
    name: str
    description: str = ""
    continue_on_error: bool = False
    timeout_seconds: float | None = None
    retry_count: int | None = None
    retry_delay_ms: int | None = None

    @property
    def children(self) -> tuple[Step, ...]:
        return ()

    @property
    def is_container(self) -> bool:
        return self.kind in CONTAINER_KINDS


@dataclass(frozen=True, kw_only=True)
class HttpStep(BaseStep):
    kind: ClassVar[StepKind] = StepKind.HTTP
    config: HttpConfig


@dataclass(frozen=True, kw_only=True)
class SqlStep(BaseStep):
    kind: ClassVar[StepKind] = StepKind.SQL
    config: SqlConfig


@dataclass(frozen=True, kw_only=True)
class ShellStep(BaseStep):
    kind: ClassVar[StepKind] = StepKind.SHELL
    config: ShellConfig


@dataclass(frozen=True, kw_only=True)
class ScriptStep(BaseStep):
    kind: ClassVar[StepKind] = StepKind.SCRIPT
    config: ScriptConfig


@dataclass(frozen=True, kw_only=True)
class ManualStep(BaseStep):
    kind: ClassVar[StepKind] = StepKind.MANUAL
    config: ManualConfig


@dataclass(frozen=True, kw_only=True)
class ConditionalStep(BaseStep):
    kind: ClassVar[StepKind] = StepKind.CONDITIONAL
    config: ConditionalConfig

    @property
    def children(self) -> tuple[Step, ...]:
        return self.config.on_true + self.config.on_false


@dataclass(frozen=True, kw_only=True)
class AiStep(BaseStep):
    kind: ClassVar[StepKind] = StepKind.AI
    config: AiConfig


@dataclass(frozen=True, kw_only=True)
class WaitStep(BaseStep):
    kind: ClassVar[StepKind] = StepKind.WAIT
    config: WaitConfig


@dataclass(frozen=True, kw_only=True)
class ParallelStep(BaseStep):
    kind: ClassVar[StepKind] = StepKind.PARALLEL
    config: ParallelConfig

    @property
    def children(self) -> tuple[Step, ...]:
        return self.config.steps


Step = Union[
    HttpStep,
    SqlStep,
    ShellStep,
    ScriptStep,
    ManualStep,
    ConditionalStep,
    AiStep,
    WaitStep,
    ParallelStep,
]


# =============================================================================
# Tree helpers
# =============================================================================


def iter_steps(steps: Iterable[Step]) -> Iterator[Step]:
    """Walk a step tree in document pre-order."""
    for step in steps:
        yield step
        yield from iter_steps(step.children)


def count_steps(steps: Iterable[Step]) -> int:
    """Flattened step count, nested CONDITIONAL/PARALLEL children included."""
    return sum(1 for _ in iter_steps(steps))


def find_duplicate_ids(steps: Iterable[Step]) -> list[str]:
    seen: set[str] = set()
    duplicates: list[str] = []
    for step in iter_steps(steps):
        if step.id in seen and step.id not in duplicates:
            duplicates.append(step.id)
        seen.add(step.id)
    return duplicates


class StepPlan:
    """Flat pre-order indexing of a step tree.

    Every step gets a unique flat index; a step's subtree occupies the
    contiguous range ``[index_of(step.id), index_of(step.id) + size_of(step))``.
    ``offset`` shifts the whole plan (rollback steps are indexed after the
    main tree).
    """

    def __init__(self, steps: Iterable[Step], offset: int = 0) -> None:
        self.steps: tuple[Step, ...] = tuple(steps)
        self._index: dict[str, int] = {}
        self._size: dict[str, int] = {}
        self.total = self._assign(self.steps, offset) - offset
        self.offset = offset

    def _assign(self, steps: Iterable[Step], next_index: int) -> int:
        for step in steps:
            start = next_index
            self._index[step.id] = start
            next_index = self._assign(step.children, start + 1)
            self._size[step.id] = next_index - start
        return next_index

    def index_of(self, step_id: str) -> int:
        return self._index[step_id]

    def size_of(self, step: Step) -> int:
        return self._size[step.id]

    def top_level_from(self, from_index: int) -> list[tuple[int, Step]]:
        """Top-level steps whose flat index is at least ``from_index``."""
        return [
            (self._index[step.id], step)
            for step in self.steps
            if self._index[step.id] >= from_index
        ]

    @property
    def indices(self) -> dict[str, int]:
        return dict(self._index)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._index


__all__ = [
    "StepKind",
    "CONTAINER_KINDS",
    "HttpAuth",
    "ResponseAssertion",
    "HttpConfig",
    "ResultAssertion",
    "SqlConfig",
    "ShellConfig",
    "ScriptConfig",
    "ManualConfig",
    "Condition",
    "ConditionalConfig",
    "AiContextOptions",
    "AiConfig",
    "WaitConfig",
    "ParallelConfig",
    "BaseStep",
    "HttpStep",
    "SqlStep",
    "ShellStep",
    "ScriptStep",
    "ManualStep",
    "ConditionalStep",
    "AiStep",
    "WaitStep",
    "ParallelStep",
    "Step",
    "iter_steps",
    "count_steps",
    "find_duplicate_ids",
    "StepPlan",
]
