"""tig-spine provisioning: twelve ordered steps that bring up a monitoring stack.

Key Concepts:
    StackConfig: immutable Configuration Set resolved from the environment.
    StepOrchestrator: runs the steps, recording each in a ``RunLedger``.
    DeploymentValidator: bounded convergence poll with one remediation.
    run_provisioning: the boot payload entry point (exit 0 / 1 / 2).

Related Modules:
    - :mod:`tigspine.provision.config` — Environment Resolver
    - :mod:`tigspine.provision.materializer` — Resource Materializer
    - :mod:`tigspine.provision.runtime` — Runtime Installer
    - :mod:`tigspine.provision.orchestrator` — Step Orchestrator
    - :mod:`tigspine.provision.validator` — Deployment Validator
    - :mod:`tigspine.provision.bootstrap` — entry point and closing block
    - :mod:`tigspine.cli.app` — operator CLI (``tigspine provision``)
"""

from tigspine.provision.config import StackConfig
from tigspine.provision.results import EXIT_CONFIG, EXIT_FAILED, EXIT_OK, RunLedger, RunStatus

__all__ = [
    "EXIT_CONFIG",
    "EXIT_FAILED",
    "EXIT_OK",
    "RunLedger",
    "RunStatus",
    "StackConfig",
]
