"""Kernel build module.

This module handles:
- Shallow clones of the configured kernel branch
- Cross-compiling with the device defconfig fragment
- Deriving the kernel release from the built tree
- Installing modules and publishing the standalone kernel outputs
"""

from raphael_imagegen.kernel.source import (
    BranchNotFoundError,
    check_branch,
    clone_source,
    compose_clone_command,
)
from raphael_imagegen.kernel.stage import (
    KernelBuildStage,
    KernelStateMachine,
    make_command,
    publish_standalone,
)

__all__ = [
    # Source
    "BranchNotFoundError",
    "check_branch",
    "clone_source",
    "compose_clone_command",
    # Stage
    "KernelBuildStage",
    "KernelStateMachine",
    "make_command",
    "publish_standalone",
]
