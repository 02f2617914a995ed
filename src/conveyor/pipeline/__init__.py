"""Pipeline orchestration — rules, job graph, scheduling, run state.

Key exports:
    PipelineController — Drives one pipeline run end to end
    Scheduler — Dispatches runnable jobs over the job graph
    JobGraph, JobSpec, build_graph — Validated DAG of included jobs
    evaluate_pipeline, evaluate_job — Rule evaluation
    RunRegistry — SQLite persistence of pipeline and job runs
"""

from conveyor.pipeline.controller import PipelineController, new_pipeline_id
from conveyor.pipeline.graph import JobGraph, JobSpec, build_graph
from conveyor.pipeline.registry import RunRegistry
from conveyor.pipeline.rules import (
    AllOf,
    Always,
    AnyOf,
    ChangesPredicate,
    EventPredicate,
    ExpressionPredicate,
    Predicate,
    RefPredicate,
    Rule,
    RuleDecision,
    SchedulePredicate,
    compile_rules,
    evaluate_job,
    evaluate_pipeline,
)
from conveyor.pipeline.scheduler import Scheduler

__all__ = [
    # Controller
    "PipelineController",
    "new_pipeline_id",
    # Scheduling
    "Scheduler",
    # Graph
    "JobGraph",
    "JobSpec",
    "build_graph",
    # Registry
    "RunRegistry",
    # Rules
    "Predicate",
    "Always",
    "RefPredicate",
    "EventPredicate",
    "SchedulePredicate",
    "ChangesPredicate",
    "ExpressionPredicate",
    "AllOf",
    "AnyOf",
    "Rule",
    "RuleDecision",
    "compile_rules",
    "evaluate_job",
    "evaluate_pipeline",
]
