"""tig-spine: unattended provisioning of a Telegraf / InfluxDB / Grafana stack.

The package is split into ``tigspine.core`` (errors, logging, secrets,
settings, external commands) and ``tigspine.provision`` (the Configuration
Set, artifact templates, runtime installer, deployment validator and the
step orchestrator that drives them). ``python -m tigspine`` runs the boot
payload.
"""

__version__ = "0.1.0"
