from perfstat.engine.evaluator import evaluate
from perfstat.engine.navigation import NavigationGraphWalker
from perfstat.engine.recompute import RecomputationEngine, RecomputeReport
from perfstat.engine.references import FieldReferenceResolver, Formula
from perfstat.engine.rollup import CompanyValueCache, RollupAggregator, RollupConfig, RollupMapping
from perfstat.engine.session import FormSession
from perfstat.engine.shape import FormShapeBuilder
from perfstat.engine.submission import assemble, prior_values

__all__ = [
    "CompanyValueCache",
    "FieldReferenceResolver",
    "FormSession",
    "FormShapeBuilder",
    "Formula",
    "NavigationGraphWalker",
    "RecomputationEngine",
    "RecomputeReport",
    "RollupAggregator",
    "RollupConfig",
    "RollupMapping",
    "assemble",
    "evaluate",
    "prior_values",
]
