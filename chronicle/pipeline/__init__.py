"""Turn pipeline: Brain, fate, merge, Voice, review, persist, charge.

See ``orchestrator`` for the stage-by-stage flow.
"""

from .orchestrator import ProviderFactory, Stage, TurnPipeline, default_provider_factory

__all__ = ["ProviderFactory", "Stage", "TurnPipeline", "default_provider_factory"]
