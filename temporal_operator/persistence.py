"""Schema migration Jobs of the Temporal datastores.

The scripts for all migration steps are rendered into a single ConfigMap that
every migration Job mounts. Each Job runs exactly one script. The order of the
Jobs and whether they still need to run is defined by `persistence_jobs`.

"""

import logging
import posixpath
import textwrap
from typing import Dict, List, Tuple
from urllib.parse import urlencode

from packaging.version import Version

import temporal_operator.defaults
from temporal_operator.builder import Builder
from temporal_operator.jobs import Job
from temporal_operator.manifest_utilities import set_metadata, set_owner_reference
from temporal_operator.models import (
    DatastoreSpec,
    DatastoreStatus,
    DatastoreType,
    K8sEnvVar,
    TemporalCluster,
)

# Convenience.
logit = logging.getLogger("app")

SCRIPTS_MOUNT_PATH = "/etc/scripts"
SCHEMA_ROOT = "/etc/temporal/schema"

CREATE_DEFAULT_DATABASE = "create-default-database.sh"
SETUP_DEFAULT_SCHEMA = "setup-default-schema.sh"
UPDATE_DEFAULT_SCHEMA = "update-default-schema.sh"
CREATE_VISIBILITY_DATABASE = "create-visibility-database.sh"
SETUP_VISIBILITY_SCHEMA = "setup-visibility-schema.sh"
UPDATE_VISIBILITY_SCHEMA = "update-visibility-schema.sh"
SETUP_ADVANCED_VISIBILITY = "setup-advanced-visibility.sh"
UPDATE_ADVANCED_VISIBILITY = "update-advanced-visibility.sh"

# Schema directories inside the admin-tools image as `(store, version)`.
SCHEMA_PATHS: Dict[str, Tuple[str, str]] = {
    "postgres": ("postgresql", "v96"),
    "postgres12": ("postgresql", "v12"),
    "mysql": ("mysql", "v57"),
    "mysql8": ("mysql", "v8"),
}


def schema_dir(store: DatastoreSpec, visibility: bool) -> str:
    """Return the directory with the versioned schema files for `store`."""
    if store.datastore_type() == DatastoreType.CASSANDRA:
        store_path, version_path = "cassandra", ""
    elif store.sql is not None:
        store_path, version_path = SCHEMA_PATHS.get(store.sql.pluginName, ("", ""))
    else:
        store_path, version_path = "", ""

    target = "visibility" if visibility else "temporal"
    parts = [_ for _ in (store_path, version_path, target) if _]
    return posixpath.join(SCHEMA_ROOT, *parts, "versioned")


def format_args(args: List[Tuple[str, str]]) -> str:
    """Render `args` as `--key="value"` and valueless flags as `--key`."""
    out = []
    for key, value in args:
        out.append(f'--{key}="{value}"' if value else f"--{key}")
    return str.join(" ", out)


def store_tool(store: DatastoreSpec) -> str:
    if store.datastore_type() == DatastoreType.CASSANDRA:
        # The cassandra tool insists on this variable even with `--port`.
        return "CASSANDRA_PORT=9042 temporal-cassandra-tool"
    return "temporal-sql-tool"


def store_args(store: DatastoreSpec) -> Tuple[str, bool]:
    """Return the connection arguments of the schema tools for `store`."""
    password = f"${store.password_env_var()}"
    args: List[Tuple[str, str]] = []

    if store.sql is not None and store.datastore_type() != DatastoreType.UNKNOWN:
        host, sep, port = store.sql.connectAddr.rpartition(":")
        if not sep or not host or not port.isdigit():
            logit.error("invalid connect address", {"store": store.name})
            return "", True

        args += [("endpoint", host), ("port", port), ("user", store.sql.user)]
        if store.passwordSecretRef is not None:
            args.append(("password", password))
        args += [
            ("database", store.sql.databaseName),
            ("plugin", store.sql.pluginName),
        ]
        if store.sql.connectAttributes:
            attrs = urlencode(sorted(store.sql.connectAttributes.items()))
            args.append(("connect-attributes", attrs))
        return format_args(args), False

    if store.cassandra is not None:
        args += [
            ("endpoint", str.join(",", store.cassandra.hosts)),
            ("port", str(store.cassandra.port)),
        ]
        if store.cassandra.user:
            args.append(("user", store.cassandra.user))
        if store.passwordSecretRef is not None:
            args.append(("password", password))
        args.append(("keyspace", store.cassandra.keyspace))
        if store.cassandra.datacenter:
            args.append(("datacenter", store.cassandra.datacenter))
        return format_args(args), False

    logit.error("unsupported datastore", {"store": store.name})
    return "", True


class SchemaScriptsConfigMapBuilder(Builder):
    def __init__(self, cluster: TemporalCluster):
        self.cluster = cluster

    def build(self) -> dict:
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": self.cluster.child_name("schema-scripts"),
                "namespace": self.cluster.metadata.namespace,
            },
        }

    def proxy_shutdown(self) -> str:
        """Return the lines that stop the mesh sidecar once the script is done.

        Jobs never complete while a sidecar proxy keeps their Pod alive.

        """
        mtls = self.cluster.spec.mTLS
        if mtls is None:
            return ""

        urls = {
            "istio": "curl -sf -XPOST http://127.0.0.1:15020/quitquitquit",
            "linkerd": "curl -X POST http://localhost:4191/shutdown",
        }
        if mtls.provider not in urls:
            return ""
        return str.join("\n", ["x=$?", urls[mtls.provider], "exit $x"])

    def render(self, body: str) -> str:
        script = textwrap.dedent(body).strip() + "\n"
        suffix = self.proxy_shutdown()
        return script + suffix + "\n" if suffix else script

    def create_script(self, store: DatastoreSpec) -> Tuple[str, bool]:
        if store.datastore_type() == DatastoreType.ELASTICSEARCH:
            return self.render('#!/bin/bash\necho "No-op"'), False

        args, err = store_args(store)
        if err:
            return "", True
        tool = store_tool(store)

        if store.cassandra is not None:
            keyspace = store.cassandra.keyspace
            cmd = f"{tool} {args} create-Keyspace -k {keyspace}"
        elif Version(self.cluster.spec.version) >= Version("1.18.0"):
            cmd = f"{tool} {args} create"
        else:
            assert store.sql is not None
            cmd = f"{tool} {args} create-database -database {store.sql.databaseName}"
        return self.render(f"#!/bin/bash\n{cmd}"), False

    def setup_script(self, store: DatastoreSpec) -> Tuple[str, bool]:
        if store.datastore_type() == DatastoreType.ELASTICSEARCH:
            return self.es_setup_script(store), False

        args, err = store_args(store)
        if err:
            return "", True
        cmd = f"{store_tool(store)} {args} setup-schema -v 0.0"
        return self.render(f"#!/bin/bash\n{cmd}"), False

    def update_script(
        self, store: DatastoreSpec, visibility: bool
    ) -> Tuple[str, bool]:
        if store.datastore_type() == DatastoreType.ELASTICSEARCH:
            return self.es_update_script(store), False

        args, err = store_args(store)
        if err:
            return "", True
        directory = schema_dir(store, visibility)
        cmd = f"{store_tool(store)} {args} update-schema -d {directory}"
        return self.render(f"#!/bin/bash\n{cmd}"), False

    def es_curl(self, store: DatastoreSpec) -> str:
        assert store.elasticsearch is not None
        user = store.elasticsearch.username
        return f'curl --user "{user}":"${store.password_env_var()}"'

    def es_setup_script(self, store: DatastoreSpec) -> str:
        es = store.elasticsearch
        assert es is not None

        # There is no dedicated v8 schema and v8 clusters use the v7 one.
        version = "v7" if es.version == "v8" else es.version
        index = es.indices.visibility
        schema = f"{SCHEMA_ROOT}/elasticsearch/visibility"
        template = f"/tmp/index_template_{version}.json"
        curl = self.es_curl(store)
        json_hdr = '-H "Content-Type: application/json"'

        lines = [
            "#!/bin/bash",
            f"sed 's/temporal_visibility_v1./{index}*/g' "
            f"{schema}/index_template_{version}.json > {template}",
            f'{curl} --fail -X PUT "{es.url}/_cluster/settings" {json_hdr} '
            f"--data-binary @{schema}/cluster_settings_{version}.json",
            f'{curl} --fail -X PUT "{es.url}/_template/{index}_template" {json_hdr} '
            f"--data-binary @{template}",
            # Creating an index is not idempotent and must not fail the Job.
            f'{curl} -X PUT "{es.url}/{index}"',
        ]
        if es.indices.secondaryVisibility:
            secondary = es.indices.secondaryVisibility
            lines.append(f'{curl} -X PUT "{es.url}/{secondary}"')
        return self.render(str.join("\n", lines))

    def es_update_script(self, store: DatastoreSpec) -> str:
        es = store.elasticsearch
        assert es is not None

        index = es.indices.visibility
        curl = self.es_curl(store)
        health = f'{curl} --silent "{es.url}/_cluster/health/{index}"'
        body = f"""\
            #!/bin/bash
            until {health} | jq --exit-status '.status=="green" | .'; do
                echo "Waiting for Elasticsearch index {index} to become green."
                sleep 1
            done
            """
        return self.render(body)

    def scripts(self) -> Tuple[Dict[str, str], bool]:
        persistence = self.cluster.spec.persistence
        default, visibility = persistence.defaultStore, persistence.visibilityStore

        steps = [
            (CREATE_DEFAULT_DATABASE, self.create_script, (default,)),
            (SETUP_DEFAULT_SCHEMA, self.setup_script, (default,)),
            (UPDATE_DEFAULT_SCHEMA, self.update_script, (default, False)),
            (CREATE_VISIBILITY_DATABASE, self.create_script, (visibility,)),
            (SETUP_VISIBILITY_SCHEMA, self.setup_script, (visibility,)),
            (UPDATE_VISIBILITY_SCHEMA, self.update_script, (visibility, True)),
        ]

        data: Dict[str, str] = {}
        for name, render, args in steps:
            script, err = render(*args)  # type: ignore
            if err:
                return {}, True
            data[name] = script

        advanced = persistence.advancedVisibilityStore
        if advanced is not None:
            if advanced.datastore_type() != DatastoreType.ELASTICSEARCH:
                logit.error("advanced visibility requires Elasticsearch")
                return {}, True
            data[SETUP_ADVANCED_VISIBILITY] = self.es_setup_script(advanced)
            data[UPDATE_ADVANCED_VISIBILITY] = self.es_update_script(advanced)
        return data, False

    def update(self, manifest: dict) -> bool:
        data, err = self.scripts()
        if err:
            return True

        labels = temporal_operator.defaults.resource_labels(
            self.cluster, "schema-scripts", self.cluster.spec.version
        )
        set_metadata(manifest, labels, self.cluster.metadata.annotations)
        set_owner_reference(self.cluster, manifest)
        manifest["data"] = data
        return False


def password_env_vars(cluster: TemporalCluster) -> List[K8sEnvVar]:
    """Expose the password of every datastore as an env var."""
    out = []
    for store in cluster.spec.persistence.datastores():
        ref = store.passwordSecretRef
        if ref is None:
            continue
        out.append(
            K8sEnvVar(
                name=store.password_env_var(),
                valueFrom=dict(secretKeyRef=dict(name=ref.name, key=ref.key)),
            )
        )
    return out


class SchemaJobBuilder(Builder):
    """One schema migration Job that runs `command` in the admin-tools image."""

    def __init__(self, cluster: TemporalCluster, name: str, command: List[str]):
        self.cluster = cluster
        self.name = name
        self.command = command

    def build(self) -> dict:
        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {
                "name": self.cluster.child_name(self.name),
                "namespace": self.cluster.metadata.namespace,
            },
        }

    def update(self, manifest: dict) -> bool:
        cluster = self.cluster
        version = cluster.spec.version

        frontend = cluster.spec.services.get("frontend")
        if frontend is None:
            logit.error("no frontend service", {"cluster": cluster.metadata.name})
            return True

        labels = temporal_operator.defaults.resource_labels(cluster, self.name, version)
        set_metadata(manifest, labels, cluster.metadata.annotations)
        set_owner_reference(cluster, manifest)

        address = f"{cluster.child_name('frontend')}:{frontend.port}"
        env = [K8sEnvVar(name="TEMPORAL_CLI_ADDRESS", value=address)]
        env += password_env_vars(cluster)

        admin = cluster.spec.adminTools
        image = admin.image if admin else "temporalio/admin-tools"

        container = {
            "name": "schema-script-runner",
            "image": f"{image}:{version}",
            "imagePullPolicy": "IfNotPresent",
            "command": ["/bin/sh", "-c"] + self.command,
            "env": [_.model_dump(exclude_defaults=True) for _ in env],
            "securityContext": {"allowPrivilegeEscalation": False},
            "volumeMounts": [{"name": "scripts", "mountPath": SCRIPTS_MOUNT_PATH}],
        }

        spec = {
            "backoffLimit": 6,
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "restartPolicy": "OnFailure",
                    "containers": [container],
                    "volumes": [
                        {
                            "name": "scripts",
                            "configMap": {
                                "name": cluster.child_name("schema-scripts"),
                                "defaultMode": 0o777,
                            },
                        }
                    ],
                },
            },
        }
        if cluster.spec.jobTtlSecondsAfterFinished is not None:
            spec["ttlSecondsAfterFinished"] = cluster.spec.jobTtlSecondsAfterFinished

        manifest["spec"] = spec
        return False


def schema_job_factory(
    cluster: TemporalCluster, name: str, command: List[str]
) -> Builder:
    return SchemaJobBuilder(cluster, name, command)


def version_suffix(version: str) -> str:
    return "v" + version.replace(".", "-")


def script_command(script: str) -> List[str]:
    return [posixpath.join(SCRIPTS_MOUNT_PATH, script)]


def store_status(cluster: TemporalCluster, field: str) -> DatastoreStatus:
    """Return the persistence status `field` of `cluster` and create it if missing."""
    status = getattr(cluster.status.persistence, field)
    if status is None:
        status = DatastoreStatus()
        setattr(cluster.status.persistence, field, status)
    return status


def create_job(field: str, script: str, store: DatastoreSpec) -> Job:
    def report(cluster: TemporalCluster) -> bool:
        status = store_status(cluster, field)
        status.created = True
        status.type = store.datastore_type().value
        return False

    return Job(
        name=script.removesuffix(".sh"),
        command=script_command(script),
        skip=lambda cluster: store_status(cluster, field).created,
        report_success=report,
    )


def setup_job(field: str, script: str) -> Job:
    def report(cluster: TemporalCluster) -> bool:
        store_status(cluster, field).setup = True
        return False

    return Job(
        name=script.removesuffix(".sh"),
        command=script_command(script),
        skip=lambda cluster: store_status(cluster, field).setup,
        report_success=report,
    )


def update_job(field: str, script: str, version: str) -> Job:
    def report(cluster: TemporalCluster) -> bool:
        store_status(cluster, field).schemaVersion = version
        return False

    return Job(
        name=f"{script.removesuffix('.sh')}-{version_suffix(version)}",
        command=script_command(script),
        skip=lambda cluster: store_status(cluster, field).schemaVersion == version,
        report_success=report,
    )


def persistence_jobs(cluster: TemporalCluster) -> List[Job]:
    """Return the ordered migration Jobs of all datastores of `cluster`.

    Every Job checks the persistence status of the cluster to decide whether
    it must run and records its success there. The update Jobs carry the
    target version in their name to run again after a version bump.

    """
    persistence = cluster.spec.persistence
    version = cluster.spec.version
    advanced = persistence.advancedVisibilityStore is not None

    jobs = [
        create_job("defaultStore", CREATE_DEFAULT_DATABASE, persistence.defaultStore),
        create_job(
            "visibilityStore", CREATE_VISIBILITY_DATABASE, persistence.visibilityStore
        ),
        setup_job("defaultStore", SETUP_DEFAULT_SCHEMA),
        setup_job("visibilityStore", SETUP_VISIBILITY_SCHEMA),
    ]
    if advanced:
        jobs.append(setup_job("advancedVisibilityStore", SETUP_ADVANCED_VISIBILITY))

    jobs += [
        update_job("defaultStore", UPDATE_DEFAULT_SCHEMA, version),
        update_job("visibilityStore", UPDATE_VISIBILITY_SCHEMA, version),
    ]
    if advanced:
        jobs.append(
            update_job("advancedVisibilityStore", UPDATE_ADVANCED_VISIBILITY, version)
        )
    return jobs
