"""
Cloud SQL proxy sidecar and per-consumer credentials.

A workload consuming a Cloud SQL instance talks to it through a proxy
container listening on localhost. For each consumer this module provides:

    generate_credential     random password scoped to (consumer, relation)
    create_proxy            service account + key + IAM binding + k8s secret
                            + the proxy container that mounts it
    sidecar_pre_processor   appends the proxy container and its volume to
                            the workload spec
    init_job_post_processor runs a one-shot grant job through a throwaway
                            proxy that kills itself after a fixed ceiling

Names are sanitised here, right before the engine calls, never earlier.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from stackwire.adapters.base import JobSpec, ProvisioningEngine, ResourceHandle
from stackwire.core.deferred import Deferred
from stackwire.core.errors import InitJobError
from stackwire.core.models.workload import Container, Volume, VolumeMount, Workload, WorkloadArgs
from stackwire.core.naming import sanitize_k8s_name, to_service_account_id, trim_string_middle

logger = logging.getLogger(__name__)

PROXY_IMAGE = "gcr.io/cloud-sql-connectors/cloud-sql-proxy:2.8.1-alpine"
PROXY_CONTAINER_NAME = "cloudsql-proxy"
PROXY_BINARY = "/cloud-sql-proxy"
CREDENTIALS_MOUNT = "/var/run/secrets/cloudsql"
CLOUDSQL_CLIENT_ROLE = "roles/cloudsql.client"
INIT_JOB_IMAGE = "alpine:latest"
PASSWORD_LENGTH = 20
MAX_K8S_NAME = 60


@dataclass
class CloudSQLInstance:
    project: str
    region: str
    instance_name: str

    @property
    def connection_name(self) -> str:
        return f"{self.project}:{self.region}:{self.instance_name}"


@dataclass
class CloudSQLProxy:
    name: str
    container: Container
    secret_name: str
    handles: list[ResourceHandle] = field(default_factory=list)

    @property
    def volume(self) -> Volume:
        return Volume(name=self.secret_name, secret_name=self.secret_name, mount_path=CREDENTIALS_MOUNT)


@dataclass
class DbUser:
    username: str
    database: str


def generate_credential(engine: ProvisioningEngine, scope: str) -> Deferred[str]:
    """Random password (no special characters) owned by ``scope``."""
    handle = engine.create_resource(
        "random-password", f"{scope}-password", {"length": PASSWORD_LENGTH, "special": False}
    )
    password = handle.output("result")
    password.secret = True
    return password


def proxy_container(secret_name: str, instance: CloudSQLInstance, timeout_sec: int = 0) -> Container:
    """The proxy container; with a timeout it is wrapped in a self-killing shell."""
    command = PROXY_BINARY
    args = [
        "--address",
        "0.0.0.0",
        "--structured-logs",
        f"--credentials-file={CREDENTIALS_MOUNT}/credentials.json",
        instance.connection_name,
    ]
    if timeout_sec > 0:
        script = (
            f'echo "Starting proxy with timeout {timeout_sec}s..."\n'
            f"{command} {' '.join(args)} &\n"
            "PROXY_PID=$!\n"
            f'echo "Waiting {timeout_sec}s until killing proxy..."\n'
            f"sleep {timeout_sec};\n"
            f'echo "Killing proxy after {timeout_sec}s"\n'
            "kill -9 $PROXY_PID;\n"
            "exit 0;\n"
        )
        command, args = "sh", ["-c", script]
    return Container(
        name=PROXY_CONTAINER_NAME,
        image=PROXY_IMAGE,
        command=[command],
        args=args,
        run_as_non_root=True,
        limits={"memory": "300Mi", "cpu": "300m"},
        requests={"memory": "200Mi", "cpu": "50m"},
        volume_mounts=[VolumeMount(name=secret_name, mount_path=CREDENTIALS_MOUNT, read_only=True)],
    )


def create_proxy(
    engine: ProvisioningEngine,
    name: str,
    instance: CloudSQLInstance,
    namespace: str,
    timeout_sec: int = 0,
) -> CloudSQLProxy:
    """Provision the service account behind a proxy and build its container."""
    account_id = to_service_account_id(name)
    account = engine.create_resource("service-account", account_id, {
        "account_id": account_id,
        "project": instance.project,
        "display_name": f"{name}-service-account",
        "description": f"Service account to access database {instance.instance_name}",
    })
    key = engine.create_resource("service-account-key", f"{account_id}-key", {
        "service_account": account.output("email"),
    })
    iam = engine.create_resource("iam-member", f"{account_id}-iam", {
        "project": instance.project,
        "role": CLOUDSQL_CLIENT_ROLE,
        "member": account.output("email").map(lambda email: f"serviceAccount:{email}"),
    })
    secret_name = sanitize_k8s_name(f"{name}-creds")
    secret = engine.create_resource("k8s-secret", secret_name, {
        "namespace": namespace,
        "credentials.json": key.output("private_key"),
    })
    logger.debug("Created cloudsql proxy account %s for %s", account_id, instance.connection_name)
    return CloudSQLProxy(
        name=name,
        container=proxy_container(secret_name, instance, timeout_sec),
        secret_name=secret_name,
        handles=[account, key, iam, secret],
    )


def sidecar_pre_processor(
    engine: ProvisioningEngine,
    name: str,
    instance: CloudSQLInstance,
    namespace: str,
) -> Callable[[WorkloadArgs], WorkloadArgs]:
    """Pre-processor appending a proxy sidecar and its credentials volume."""

    def _append_sidecar(args: WorkloadArgs) -> WorkloadArgs:
        # one sidecar per instance, however many relations reach it
        if any(instance.connection_name in c.args for c in args.containers):
            return args
        proxy = create_proxy(engine, name, instance, namespace)
        if any(c.name == proxy.container.name for c in args.containers):
            proxy.container.name = trim_string_middle(
                f"{PROXY_CONTAINER_NAME}-{sanitize_k8s_name(instance.instance_name)}", MAX_K8S_NAME, "-"
            )
        args.append_container(proxy.container)
        args.append_volume(proxy.volume)
        args.depends_on.extend(h.name for h in proxy.handles)
        return args

    return _append_sidecar


def init_user_job(
    engine: ProvisioningEngine,
    user: DbUser,
    root_password: str,
    proxy: CloudSQLProxy,
    namespace: str,
    cluster: str = "",
    kubeconfig: str = "",
) -> tuple[JobSpec, Deferred[int]]:
    """Start the grant job for ``user``; resolves to the job's exit code."""
    job_name = trim_string_middle(f"{sanitize_k8s_name(user.username)}-db-user-init", MAX_K8S_NAME, "-")
    creds_name = trim_string_middle(f"{job_name}-creds", MAX_K8S_NAME, "-")
    engine.create_resource("k8s-secret", creds_name, {
        "namespace": namespace,
        "PGPASSWORD": root_password,
        "MYSQL_PWD": root_password,
    })
    script = (
        "set -e;\n"
        "apk add --no-cache postgresql-client;\n"
        "sleep 20;\n"
        f"psql -h localhost -U postgres -d {user.database} -c 'GRANT pg_read_all_data TO \"{user.username}\";';\n"
        f"psql -h localhost -U postgres -d {user.database} -c 'GRANT pg_write_all_data TO \"{user.username}\";';\n"
    )
    job = JobSpec(
        name=job_name,
        namespace=namespace,
        cluster=cluster,
        kubeconfig=kubeconfig,
        containers=[
            Container(
                name="job",
                image=INIT_JOB_IMAGE,
                command=["sh", "-c", script],
                secret_env={"PGPASSWORD": creds_name, "MYSQL_PWD": creds_name},
            ),
            proxy.container,
        ],
        volumes=[proxy.volume],
        backoff_limit=5,
        restart_policy="Never",
        depends_on=[creds_name] + [h.name for h in proxy.handles],
    )
    return job, engine.run_job(job)


def init_job_post_processor(
    engine: ProvisioningEngine,
    user: DbUser,
    root_password: str,
    instance: CloudSQLInstance,
    proxy_name: str,
    namespace: str,
    timeout_sec: int,
    wait_timeout: float,
    cluster: str = "",
    kubeconfig: str = "",
) -> Callable[[Workload], Workload]:
    """Post-processor running the grant job once the workload exists.

    Fails with ``InitJobError`` when the job exits non-zero or does not
    finish within ``wait_timeout`` seconds.
    """

    def _run_init_job(workload: Workload) -> Workload:
        proxy = create_proxy(
            engine,
            trim_string_middle(proxy_name, MAX_K8S_NAME, "-"),
            instance,
            namespace,
            timeout_sec=timeout_sec,
        )
        job, done = init_user_job(
            engine, user, root_password, proxy, namespace, cluster=cluster, kubeconfig=kubeconfig,
        )
        logger.info("Waiting for init job %s (user %s)", job.name, user.username)
        try:
            exit_code = done.result(wait_timeout)
        except TimeoutError as e:
            raise InitJobError(
                f"init job {job.name!r} did not finish within {wait_timeout}s",
                job_name=job.name,
            ) from e
        if exit_code != 0:
            raise InitJobError(
                f"init job {job.name!r} failed with exit code {exit_code}",
                job_name=job.name,
            )
        return workload

    return _run_init_job

