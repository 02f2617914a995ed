"""Job graph builder — turns a pipeline config into a validated DAG.

Stage barriers and ``needs`` are both just edge-generation rules on one graph:

- A job with ``needs`` gets an edge from each needed job and nothing else.
- A job without ``needs`` gets an edge from every included job of every
  earlier stage.

Rule-excluded jobs are pruned before edges are generated, so a reference to
one is an :class:`UnknownJobError` just like a typo.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field

from pydantic import BaseModel

from conveyor.config import (
    ArtifactsConfig,
    CacheConfig,
    EnvironmentConfig,
    JobConfig,
    PipelineConfig,
    ServiceConfig,
    WhenPolicy,
    expand_variables,
)
from conveyor.errors import CycleError, UnknownJobError, ValidationError
from conveyor.pipeline.rules import RuleDecision

logger = logging.getLogger(__name__)


class JobSpec(BaseModel):
    """A fully resolved, included job. Immutable once the graph is built."""

    name: str
    stage: str
    stage_index: int
    image: str
    services: list[ServiceConfig] = []
    variables: dict[str, str] = {}
    before_script: list[str] = []
    script: list[str]
    when: WhenPolicy = WhenPolicy.ON_SUCCESS
    allow_failure: bool = False
    upstream: tuple[str, ...] = ()
    artifact_sources: tuple[str, ...] = ()
    uses_needs: bool = False
    artifacts: ArtifactsConfig | None = None
    cache: CacheConfig | None = None
    timeout_seconds: float | None = None
    coverage: str | None = None
    environment: EnvironmentConfig | None = None

    model_config = {"frozen": True}

    @property
    def manual(self) -> bool:
        return self.when == WhenPolicy.MANUAL

    @property
    def full_script(self) -> list[str]:
        return [*self.before_script, *self.script]


@dataclass
class JobGraph:
    """Validated DAG of included jobs."""

    stages: list[str]
    jobs: dict[str, JobSpec]
    order: list[str] = field(default_factory=list)
    downstream: dict[str, set[str]] = field(default_factory=dict)

    def __contains__(self, name: str) -> bool:
        return name in self.jobs

    def __len__(self) -> int:
        return len(self.jobs)

    def upstream_of(self, name: str) -> tuple[str, ...]:
        return self.jobs[name].upstream

    def downstream_of(self, name: str) -> set[str]:
        return self.downstream.get(name, set())

    def jobs_in_stage(self, stage: str) -> list[JobSpec]:
        return [self.jobs[name] for name in self.order if self.jobs[name].stage == stage]

    def topological_order(self) -> list[JobSpec]:
        return [self.jobs[name] for name in self.order]


def build_graph(
    config: PipelineConfig,
    decisions: dict[str, RuleDecision] | None = None,
    *,
    default_image: str = "alpine:latest",
) -> JobGraph:
    """Validate references, generate edges, and order the included jobs.

    Args:
        config: Parsed pipeline file.
        decisions: Rule decisions per job name. None includes every job with
            its declared ``when``.
        default_image: Image for jobs that declare none and have no global image.

    Raises:
        UnknownJobError: A ``needs``/``dependencies`` entry names a missing or
            excluded job.
        CycleError: The ``needs`` edges form a cycle.
        ValidationError: A reference points to a later stage.
    """
    stage_order = config.ordered_stages()
    stage_index = {name: i for i, name in enumerate(stage_order)}

    included: dict[str, JobConfig] = {}
    for name, job in config.jobs.items():
        decision = decisions.get(name) if decisions is not None else None
        if decision is not None and not decision.included:
            logger.debug("Pruning job '%s' (%s)", name, decision.reason)
            continue
        included[name] = job

    by_stage: dict[str, list[str]] = {}
    for name, job in included.items():
        by_stage.setdefault(job.stage, []).append(name)
    active_stages = [s for s in stage_order if s in by_stage]

    jobs: dict[str, JobSpec] = {}
    for name, job in included.items():
        index = stage_index[job.stage]
        needs = _resolve_needs(job, included, stage_index)
        if job.dependencies is not None:
            _check_dependencies(job, included, stage_index)

        earlier = _earlier_stage_jobs(index, active_stages, by_stage, stage_index)
        if needs is not None:
            upstream = tuple(dict.fromkeys(n.job for n in needs))
        else:
            upstream = earlier

        if job.dependencies is not None:
            sources = tuple(job.dependencies)
        elif needs is not None:
            sources = tuple(n.job for n in needs if n.artifacts)
        else:
            sources = earlier

        decision = decisions.get(name) if decisions is not None else None
        jobs[name] = _make_spec(job, config, index, upstream, sources, needs is not None, decision, default_image)

    graph = JobGraph(stages=active_stages, jobs=jobs)
    graph.downstream = {name: set() for name in jobs}
    for name, spec in jobs.items():
        for up in spec.upstream:
            graph.downstream[up].add(name)

    declared = {name: i for i, name in enumerate(config.jobs)}
    graph.order = _toposort(jobs, graph.downstream, declared)
    logger.info(
        "Built job graph: %d jobs across %d stages (%d excluded)",
        len(jobs),
        len(active_stages),
        len(config.jobs) - len(jobs),
    )
    return graph


def _resolve_needs(
    job: JobConfig,
    included: dict[str, JobConfig],
    stage_index: dict[str, int],
) -> list | None:
    if job.needs is None:
        return None
    resolved = []
    for need in job.needs:
        if need.job not in included:
            if need.optional:
                logger.debug("Job '%s': optional need '%s' not present", job.name, need.job)
                continue
            raise UnknownJobError(job.name, need.job, "needs")
        if stage_index[included[need.job].stage] > stage_index[job.stage]:
            raise ValidationError(
                f"Job '{job.name}' needs '{need.job}' from a later stage "
                f"'{included[need.job].stage}'"
            )
        resolved.append(need)
    return resolved


def _check_dependencies(
    job: JobConfig,
    included: dict[str, JobConfig],
    stage_index: dict[str, int],
) -> None:
    for dep in job.dependencies or []:
        if dep not in included:
            raise UnknownJobError(job.name, dep, "dependencies")
        if stage_index[included[dep].stage] >= stage_index[job.stage]:
            raise ValidationError(
                f"Job '{job.name}' depends on '{dep}' which is not in an earlier stage"
            )


def _earlier_stage_jobs(
    index: int,
    active_stages: list[str],
    by_stage: dict[str, list[str]],
    stage_index: dict[str, int],
) -> tuple[str, ...]:
    return tuple(
        name
        for stage in active_stages
        if stage_index[stage] < index
        for name in by_stage[stage]
    )


def _make_spec(
    job: JobConfig,
    config: PipelineConfig,
    stage_index: int,
    upstream: tuple[str, ...],
    sources: tuple[str, ...],
    uses_needs: bool,
    decision: RuleDecision | None,
    default_image: str,
) -> JobSpec:
    variables = {**config.variables, **job.variables}
    image = job.image or config.image or default_image

    if decision is not None:
        when, allow_failure = decision.when, decision.allow_failure
    else:
        when = job.when
        allow_failure = job.allow_failure if job.allow_failure is not None else when == WhenPolicy.MANUAL

    return JobSpec(
        name=job.name,
        stage=job.stage,
        stage_index=stage_index,
        image=expand_variables(image, variables),
        services=job.services or config.services,
        variables=variables,
        before_script=job.before_script if job.before_script is not None else config.before_script,
        script=job.script,
        when=when,
        allow_failure=allow_failure,
        upstream=upstream,
        artifact_sources=sources,
        uses_needs=uses_needs,
        artifacts=job.artifacts,
        cache=job.cache or config.cache,
        timeout_seconds=job.timeout_seconds(),
        coverage=job.coverage,
        environment=job.environment,
    )


def _toposort(
    jobs: dict[str, JobSpec],
    downstream: dict[str, set[str]],
    declared: dict[str, int],
) -> list[str]:
    """Kahn's algorithm; ties broken by stage, then declaration order."""
    incoming = {name: len(spec.upstream) for name, spec in jobs.items()}

    def key(name: str) -> tuple[int, int]:
        return (jobs[name].stage_index, declared[name])

    ready = [(key(name), name) for name, count in incoming.items() if count == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        _, name = heapq.heappop(ready)
        order.append(name)
        for child in downstream[name]:
            incoming[child] -= 1
            if incoming[child] == 0:
                heapq.heappush(ready, (key(child), child))

    if len(order) != len(jobs):
        remaining = sorted(name for name in jobs if name not in set(order))
        raise CycleError(remaining)
    return order
