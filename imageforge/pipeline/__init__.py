"""Build pipeline orchestration.

This package provides:
- The staged build pipeline with guaranteed resource release
- Cancellation tokens for user abort and build timeouts
- Artifact publication and manifests
"""

from imageforge.pipeline.cancel import CancellationToken
from imageforge.pipeline.orchestrator import Pipeline, PipelineResult

__all__ = ["CancellationToken", "Pipeline", "PipelineResult"]
