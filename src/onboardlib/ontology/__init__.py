"""Hierarchical topic tree with pluggable parent inference."""

from onboardlib.ontology.inference import HeuristicParentInferrer, ParentCandidate, ParentInferrer
from onboardlib.ontology.tree import OntologyNode, TopicOntology, TopicWithParent

__all__ = [
    "HeuristicParentInferrer",
    "OntologyNode",
    "ParentCandidate",
    "ParentInferrer",
    "TopicOntology",
    "TopicWithParent",
]
