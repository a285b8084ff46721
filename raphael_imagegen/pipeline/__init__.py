"""Pipeline orchestration module.

This module handles:
- The stage contract and the shared pipeline context
- Run inputs, artifacts and manifests
- The run ledger and working directory lock
- Running stage sequences with guaranteed cleanup
"""

# Submodules are imported directly (raphael_imagegen.pipeline.orchestrator,
# etc.); stage modules depend on pipeline.stage.
