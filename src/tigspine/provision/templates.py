"""Versioned template assets for every generated artifact.

Each asset pairs a file body with its path under the install root, its
permission bits and the tokens that must appear in the written file. Write
time substitution uses ``@@name`` placeholders, so ``${VAR}`` references
meant for the compose tool or the container shells pass through verbatim.

Key Concepts:
    StackTemplate: ``string.Template`` with ``@@`` as the delimiter.
    TemplateAsset: frozen description of one file; ``render(values)``
        returns its content, raising ``MaterializeError`` on a missing
        placeholder value.
    required_tokens: literal strings the post-write assertion looks for.
        For the compose file these are the variable references that tie it
        to the ``.env`` file.

Related Modules:
    - :mod:`tigspine.provision.materializer` — writes and verifies assets
    - :mod:`tigspine.provision.steps` — picks the assets for each step

Tags:
    templates, compose, dockerfile, telegraf, influxdb, grafana
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from string import Template

from tigspine.core.errors import ErrorContext, MaterializeError

TEMPLATE_VERSION = "1.0.0"


class StackTemplate(Template):
    delimiter = "@@"


@dataclass(frozen=True)
class TemplateAsset:
    """One generated file, relative to the install root."""

    path: str
    body: str
    mode: int = 0o644
    required_tokens: tuple[str, ...] = field(default_factory=tuple)
    version: str = TEMPLATE_VERSION

    def render(self, values: Mapping[str, object] | None = None) -> str:
        mapping = {"version": self.version, **(values or {})}
        try:
            return StackTemplate(self.body).substitute(mapping)
        except (KeyError, ValueError) as exc:
            raise MaterializeError(
                f"Template {self.path} could not be rendered: missing or invalid placeholder {exc}",
                context=ErrorContext(path=self.path),
                cause=exc,
            ) from exc


# ---------------------------------------------------------------------------
# Service definition
# ---------------------------------------------------------------------------

COMPOSE = TemplateAsset(
    path="docker-compose.yml",
    required_tokens=("${CONTAINER_PREFIX}", "${INFLUXDB_PORT}", "${GRAFANA_PORT}"),
    body="""\
# Generated by tig-spine (templates @@version). Values come from .env.
services:
  influxdb:
    build: ./influxdb
    container_name: ${CONTAINER_PREFIX}_influxdb
    ports:
      - "${INFLUXDB_PORT}:${INFLUXDB_PORT}"
    volumes:
      - /var/lib/influxdb:/var/lib/influxdb
    restart: always
    env_file:
      - .env
    networks:
      - backend
      - frontend

  telegraf:
    build: ./telegraf
    container_name: ${CONTAINER_PREFIX}_telegraf
    depends_on:
      - influxdb
    volumes:
      - /var/run/docker.sock:/var/run/docker.sock
      - /proc:/hostfs/proc
    privileged: true
    restart: always
    env_file:
      - .env
    networks:
      - backend

  grafana:
    build: ./grafana
    container_name: ${CONTAINER_PREFIX}_grafana
    ports:
      - "${GRAFANA_PORT}:${GRAFANA_PORT}"
    depends_on:
      - influxdb
    volumes:
      - /var/lib/grafana
      - /var/log/grafana
      - /var/lib/grafana/plugins
    environment:
      - GF_SERVER_HTTP_PORT=${GRAFANA_PORT}
    restart: always
    env_file:
      - .env
    networks:
      - frontend

networks:
  backend:
  frontend:
""",
)

ENV_FILE = TemplateAsset(
    path=".env",
    mode=0o640,
    required_tokens=(
        "CONTAINER_PREFIX=",
        "GRAFANA_PORT=",
        "GRAFANA_PASSWORD=",
        "INFLUXDB_PORT=",
        "INFLUXDB_ADMIN_PASSWORD=",
    ),
    body="""\
# TIG Stack Environment Configuration
# Generated by tig-spine (templates @@version) on @@generated_at

# Container Configuration
CONTAINER_PREFIX=@@CONTAINER_PREFIX

# Grafana Configuration
GRAFANA_PORT=@@GRAFANA_PORT
GRAFANA_USER=@@GRAFANA_USER
GRAFANA_PASSWORD=@@GRAFANA_PASSWORD
GRAFANA_PLUGINS_ENABLED=@@GRAFANA_PLUGINS_ENABLED
GRAFANA_PLUGINS=@@GRAFANA_PLUGINS

# InfluxDB Configuration
INFLUXDB_PORT=@@INFLUXDB_PORT
INFLUXDB_HOST=@@INFLUXDB_HOST
INFLUXDB_DATABASE=@@INFLUXDB_DATABASE
INFLUXDB_ADMIN_USER=@@INFLUXDB_ADMIN_USER
INFLUXDB_ADMIN_PASSWORD=@@INFLUXDB_ADMIN_PASSWORD

# Telegraf Configuration
TELEGRAF_HOST=@@TELEGRAF_HOST
TELEGRAF_INTERVAL=@@TELEGRAF_INTERVAL
""",
)

# ---------------------------------------------------------------------------
# Grafana
# ---------------------------------------------------------------------------

GRAFANA_DOCKERFILE = TemplateAsset(
    path="grafana/Dockerfile",
    required_tokens=("FROM grafana/grafana",),
    body="""\
FROM grafana/grafana:9.5.6-ubuntu

LABEL description="Grafana docker image"

USER root

RUN apt-get -q update &&\\
    DEBIAN_FRONTEND="noninteractive" apt-get -q install -y --no-install-recommends curl gosu &&\\
    apt-get -q clean -y && rm -rf /var/lib/apt/lists/*

RUN mkdir -p /opt/grafana/dashboards
ADD default-dashboard.yaml /etc/grafana/provisioning/dashboards/

ADD run.sh /run.sh
ENTRYPOINT ["bash", "/run.sh"]
""",
)

GRAFANA_RUN = TemplateAsset(
    path="grafana/run.sh",
    mode=0o755,
    required_tokens=("#!/bin/bash", "GRAFANA_PLUGINS_ENABLED", "/api/datasources"),
    body="""\
#!/bin/bash -e

: "${GF_PATHS_DATA:=/var/lib/grafana}"
: "${GF_PATHS_LOGS:=/var/log/grafana}"
: "${GF_PATHS_PLUGINS:=/var/lib/grafana/plugins}"

chown -R grafana:grafana "$GF_PATHS_DATA" "$GF_PATHS_LOGS" /etc/grafana

if [ "${GRAFANA_PLUGINS_ENABLED}" != "false" ] && [ -n "${GRAFANA_PLUGINS}" ]
then
  for plugin in ${GRAFANA_PLUGINS}
  do
    if [ ! -d "${GF_PATHS_PLUGINS}/$plugin" ]
    then
      grafana-cli plugins install "$plugin" || true
    else
      echo "Plugin $plugin already installed"
    fi
  done
fi

gosu grafana /usr/share/grafana/bin/grafana-server \\
  --homepath=/usr/share/grafana \\
  --config=/etc/grafana/grafana.ini \\
  cfg:default.security.admin_user="$GRAFANA_USER" \\
  cfg:default.security.admin_password="$GRAFANA_PASSWORD" \\
  cfg:default.paths.data="$GF_PATHS_DATA" \\
  cfg:default.paths.logs="$GF_PATHS_LOGS" \\
  cfg:default.paths.plugins="$GF_PATHS_PLUGINS" &

until curl -sf "http://localhost:${GRAFANA_PORT}/api/health" > /dev/null
do
  sleep 2
done

DATA_SOURCE="Docker InfluxDB"
STATUS=$(curl -s -o /dev/null -w "%{http_code}" \\
  -u "${GRAFANA_USER}:${GRAFANA_PASSWORD}" \\
  "http://localhost:${GRAFANA_PORT}/api/datasources/name/Docker%20InfluxDB")

if [ "$STATUS" != "200" ]
then
  echo "Creating data source '$DATA_SOURCE'"
  curl -s -u "${GRAFANA_USER}:${GRAFANA_PASSWORD}" \\
    -H "Content-Type: application/json" \\
    -X POST "http://localhost:${GRAFANA_PORT}/api/datasources" \\
    -d '{"name":"'"$DATA_SOURCE"'","type":"influxdb","access":"proxy",
         "url":"http://'"${INFLUXDB_HOST}"':'"${INFLUXDB_PORT}"'",
         "database":"'"${INFLUXDB_DATABASE}"'",
         "user":"'"${INFLUXDB_ADMIN_USER}"'",
         "secureJsonData":{"password":"'"${INFLUXDB_ADMIN_PASSWORD}"'"}}'
else
  echo "Data source '$DATA_SOURCE' already exists"
fi

wait
""",
)

GRAFANA_DASHBOARD_PROVIDER = TemplateAsset(
    path="grafana/default-dashboard.yaml",
    required_tokens=("apiVersion: 1", "providers:"),
    body="""\
# config file version
apiVersion: 1

providers:
 - name: 'default'
   orgId: 1
   folder: ''
   type: file
   options:
     path: /opt/grafana/dashboards
""",
)

# ---------------------------------------------------------------------------
# InfluxDB
# ---------------------------------------------------------------------------

INFLUXDB_DOCKERFILE = TemplateAsset(
    path="influxdb/Dockerfile",
    required_tokens=("FROM influxdb",),
    body="""\
FROM influxdb:1.8

LABEL description="InfluxDB docker image"

USER root

ADD influxdb.template.conf /influxdb.template.conf

ADD run.sh /run.sh
ENTRYPOINT ["bash", "/run.sh"]
""",
)

INFLUXDB_RUN = TemplateAsset(
    path="influxdb/run.sh",
    mode=0o755,
    required_tokens=("#!/bin/bash", "${INFLUXDB_ADMIN_USER}", "${INFLUXDB_DATABASE}"),
    body="""\
#!/bin/bash

set -m
CONFIG_TEMPLATE="/influxdb.template.conf"
CONFIG_FILE="/etc/influxdb/influxdb.conf"

mkdir -p /var/log/influxdb
cp -v "$CONFIG_TEMPLATE" "$CONFIG_FILE"

influxd -config="$CONFIG_FILE" 1>>/var/log/influxdb/influxdb.log 2>&1 &

until influx -host=localhost -port="${INFLUXDB_PORT}" -execute="SHOW DATABASES" > /dev/null 2>&1
do
  sleep 1
done

USER_EXISTS=$(influx -host=localhost -port="${INFLUXDB_PORT}" -execute="SHOW USERS" | awk '{print $1}' | grep -c "^${INFLUXDB_ADMIN_USER}$")

if [ "$USER_EXISTS" = "0" ]
then
  influx -host=localhost -port="${INFLUXDB_PORT}" -execute="CREATE USER ${INFLUXDB_ADMIN_USER} WITH PASSWORD '${INFLUXDB_ADMIN_PASSWORD}' WITH ALL PRIVILEGES"
fi
influx -host=localhost -port="${INFLUXDB_PORT}" -username="${INFLUXDB_ADMIN_USER}" -password="${INFLUXDB_ADMIN_PASSWORD}" -execute="CREATE DATABASE ${INFLUXDB_DATABASE}"
influx -host=localhost -port="${INFLUXDB_PORT}" -username="${INFLUXDB_ADMIN_USER}" -password="${INFLUXDB_ADMIN_PASSWORD}" -execute="GRANT ALL ON ${INFLUXDB_DATABASE} TO ${INFLUXDB_ADMIN_USER}"

fg
""",
)

INFLUXDB_CONF = TemplateAsset(
    path="influxdb/influxdb.template.conf",
    required_tokens=("[meta]", "[data]", "[http]"),
    body="""\
reporting-disabled = true
bind-address = ":8088"

[meta]
  dir = "/var/lib/influxdb/meta"
  retention-autocreate = true
  logging-enabled = true

[data]
  dir = "/var/lib/influxdb/data"
  engine = "tsm1"
  wal-dir = "/var/lib/influxdb/wal"
  query-log-enabled = true
  cache-max-memory-size = 524288000
  cache-snapshot-memory-size = 26214400
  cache-snapshot-write-cold-duration = "1h0m0s"
  compact-full-write-cold-duration = "24h0m0s"
  max-series-per-database = 1000000

[coordinator]
  write-timeout = "10s"
  max-concurrent-queries = 0
  query-timeout = "0"

[retention]
  enabled = true
  check-interval = "30m0s"

[shard-precreation]
  enabled = true
  check-interval = "10m0s"
  advance-period = "30m0s"

[monitor]
  store-enabled = true
  store-database = "_internal"
  store-interval = "10s"

[http]
  enabled = true
  bind-address = ":@@influxdb_port"
  auth-enabled = false
  log-enabled = true
  https-enabled = false
  max-row-limit = 10000
  realm = "InfluxDB"

[continuous_queries]
  log-enabled = true
  enabled = true
  run-interval = "1s"
""",
)

# ---------------------------------------------------------------------------
# Telegraf
# ---------------------------------------------------------------------------

TELEGRAF_DOCKERFILE = TemplateAsset(
    path="telegraf/Dockerfile",
    required_tokens=("FROM telegraf",),
    body="""\
FROM telegraf:1.24

LABEL description="Telegraf docker image"

USER root

ADD telegraf.conf.template /telegraf.conf.template
COPY *.conf /etc/telegraf/telegraf.d/

ADD run.sh /run.sh
ENTRYPOINT ["bash", "/run.sh"]
""",
)

TELEGRAF_RUN = TemplateAsset(
    path="telegraf/run.sh",
    mode=0o755,
    required_tokens=("#!/bin/bash", "exec telegraf"),
    body="""\
#!/bin/bash

CONFIG_TEMPLATE="/telegraf.conf.template"
CONFIG_FILE="/etc/telegraf/telegraf.conf"

sed -e "s/\\${TELEGRAF_HOST}/$TELEGRAF_HOST/" \\
    -e "s!\\${INFLUXDB_HOST}!$INFLUXDB_HOST!" \\
    -e "s/\\${INFLUXDB_PORT}/$INFLUXDB_PORT/" \\
    -e "s/\\${INFLUXDB_DATABASE}/$INFLUXDB_DATABASE/" \\
    "$CONFIG_TEMPLATE" > "$CONFIG_FILE"

mount --bind /hostfs/proc/ /proc/

echo "=> Starting Telegraf ..."
exec telegraf -config /etc/telegraf/telegraf.conf --config-directory /etc/telegraf/telegraf.d
""",
)

TELEGRAF_CONF = TemplateAsset(
    path="telegraf/telegraf.conf.template",
    required_tokens=("[[outputs.influxdb]]", "${INFLUXDB_HOST}", "${INFLUXDB_DATABASE}"),
    body="""\
# Telegraf Configuration
#
# Telegraf is entirely plugin driven. All metrics are gathered from the
# declared inputs, and sent to the declared outputs.

[global_tags]

[agent]
  interval = "@@telegraf_interval"
  round_interval = true
  metric_batch_size = 1000
  metric_buffer_limit = 10000
  collection_jitter = "0s"
  flush_interval = "@@telegraf_interval"
  flush_jitter = "0s"
  precision = ""
  debug = false
  quiet = false
  hostname = "${TELEGRAF_HOST}"
  omit_hostname = false

###############################################################################
#                            OUTPUT PLUGINS                                   #
###############################################################################

[[outputs.influxdb]]
  urls = ["http://${INFLUXDB_HOST}:${INFLUXDB_PORT}"]
  database = "${INFLUXDB_DATABASE}"
  retention_policy = ""
  write_consistency = "any"
  timeout = "5s"

###############################################################################
#                            INPUT PLUGINS                                    #
###############################################################################

[[inputs.cpu]]
  percpu = false
  totalcpu = true

[[inputs.cpu]]
  percpu = true
  totalcpu = false
  name_override = "percpu_usage"
  fielddrop = ["cpu_time*"]

[[inputs.disk]]
  ignore_fs = ["tmpfs", "devtmpfs"]
  fielddrop = ["inodes*"]

[[inputs.diskio]]

[[inputs.kernel]]

[[inputs.mem]]

[[inputs.swap]]

[[inputs.system]]

[[inputs.docker]]
  endpoint = "unix:///var/run/docker.sock"
  perdevice = true
  total = false
""",
)

TELEGRAF_SAMPLE = TemplateAsset(
    path="telegraf/sample.conf",
    body="""\
# Add any additional Telegraf configurations to this directory
# with a name ending in ".conf"
""",
)

# ---------------------------------------------------------------------------
# Documentation
# ---------------------------------------------------------------------------

README = TemplateAsset(
    path="README.md",
    required_tokens=("# TIG Stack Monitoring", "docker-compose"),
    body="""\
# TIG Stack Monitoring

This TIG (Telegraf/InfluxDB/Grafana) stack was installed automatically at
first boot by tig-spine.

## Services

- **Grafana**: Web-based monitoring dashboard
  - URL: http://@@host_address:@@grafana_port
  - Username: @@grafana_user
  - Password: see the `.env` file in this directory

- **InfluxDB**: Time-series database
  - Port: @@influxdb_port
  - Database: @@influxdb_database

- **Telegraf**: Metrics collection agent
  - Collects system and Docker metrics every @@telegraf_interval

## Management

- Start services: `@@compose_command up -d`
- Stop services: `@@compose_command down`
- View logs: `@@compose_command logs [service]`
- Check status: `@@compose_command ps`

(`docker-compose` and `docker compose` are interchangeable here.)

## Troubleshooting

- Installation log: @@log_file
- Container logs: `@@compose_command logs`
- System logs: `journalctl -u docker`

Generated on: @@generated_at
""",
)

GRAFANA_ASSETS = (GRAFANA_DOCKERFILE, GRAFANA_RUN, GRAFANA_DASHBOARD_PROVIDER)
INFLUXDB_ASSETS = (INFLUXDB_DOCKERFILE, INFLUXDB_RUN, INFLUXDB_CONF)
TELEGRAF_ASSETS = (TELEGRAF_DOCKERFILE, TELEGRAF_RUN, TELEGRAF_CONF, TELEGRAF_SAMPLE)

#: Per-service subdirectories under the install root.
SERVICE_DIRS = ("grafana", "influxdb", "telegraf")


__all__ = [
    "TEMPLATE_VERSION",
    "StackTemplate",
    "TemplateAsset",
    "COMPOSE",
    "ENV_FILE",
    "README",
    "GRAFANA_ASSETS",
    "INFLUXDB_ASSETS",
    "TELEGRAF_ASSETS",
    "SERVICE_DIRS",
]
