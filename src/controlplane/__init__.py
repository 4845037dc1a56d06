"""
Control-plane bootstrap - resumable deployment of the deployer and library.

This package drives the multi-stage bootstrap of the control plane:

1. Bootstrap the deployer (local Terraform state)
2. Validate key vault access
3. Bootstrap the library (remote state storage account)
4. Migrate the deployer state into remote storage
5. Migrate the library state into remote storage

Progress is persisted per environment and region, so an interrupted or
failed run can be re-invoked and resumes at the first incomplete stage.

Example usage:
    controlplane deploy \\
        -d DEPLOYER/DEV-WEEU-DEP00-INFRASTRUCTURE/DEV-WEEU-DEP00-INFRASTRUCTURE.json \\
        -l LIBRARY/DEV-WEEU-SAP_LIBRARY/DEV-WEEU-SAP_LIBRARY.json \\
        --auto-approve
"""

__version__ = "0.1.0"
__all__ = [
    "ConfigStore",
    "DeploymentRecord",
    "StepSequencer",
    "__version__",
]


# Lazy imports keep `controlplane --help` fast
def __getattr__(name: str):
    if name == "ConfigStore":
        from controlplane.store import ConfigStore
        return ConfigStore
    if name == "DeploymentRecord":
        from controlplane.models import DeploymentRecord
        return DeploymentRecord
    if name == "StepSequencer":
        from controlplane.sequencer import StepSequencer
        return StepSequencer
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
