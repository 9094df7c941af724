from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import os

import streamlit as st
import yaml

from nerdy_pg_pitr.config import AppConfig, ConfigError
from nerdy_pg_pitr.controller import Runtime, build_runtime
from nerdy_pg_pitr.k8s import load_kubernetes_clients, persist_kubeconfig_content
from nerdy_pg_pitr.manifests import ManifestError, load_manifest
from nerdy_pg_pitr.models import TERMINAL_RECOVERY_STATES, Backup, BackupRequest, ClusterStatus, RestoreRequest
from nerdy_pg_pitr.recovery_target import RecoveryTargetError, format_target_time, parse_recovery_target
from nerdy_pg_pitr.restore import RestoreError
from nerdy_pg_pitr.status import derive_cluster_status

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_PASTE_KUBECONFIG = "Paste kubeconfig"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_TARGET_KIND_TIME = "Timestamp (UTC)"
_TARGET_KIND_RESTORE_POINT = "Named restore point"

_NEXT_STEP_HINTS: tuple[tuple[str, str], ...] = (
    ("fence stage failed", "Check the primary pod is Running and accepts psql connections from its postgres container."),
    ("discover stage failed", "Verify the cluster's PVCs carry cnpg.io labels and are Bound."),
    ("snapshot stage failed", "Confirm the VolumeSnapshotClass exists and the CSI driver supports snapshots."),
    ("ready stage failed", "Inspect VolumeSnapshot events; raise NPP_SNAPSHOT_TIMEOUT_SECONDS for slow storage."),
    ("cleanup stage failed", "Delete the listed VolumeSnapshots manually; they are not part of any usable backup."),
    ("TargetBeforeBaseline", "Pick an older backup, or a target at or after the backup's consistency time."),
    ("TargetBeyondArchive", "Wait for more WAL to be archived, or pick an earlier target."),
    ("ArchiveGap", "A WAL segment is missing from the archive; choose a target before the gap."),
    ("BackupNotUsable", "Use a Completed backup from the same namespace."),
    ("UnknownRestorePoint", "Create the restore point on the source cluster first."),
    ("SnapshotUnavailable", "The backup's snapshots are gone or failed; take a new backup."),
    ("ReplayFailed", "Inspect the restored primary's logs; request a new restore with an earlier target."),
    ("PromotionFailed", "Inspect the restored primary's logs and node health, then restore again."),
    ("ReplicaAttachTimeout", "Replicas are still being retried; check the -rw Service and replica pod logs."),
    ("unexpected backup failure", "Inspect Kubernetes events and the controller logs."),
)


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "connection": {},
        "runtime": None,
        "last_backup": None,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _actionable_next_step(message: str | None) -> str:
    normalized = (message or "").strip()
    if not normalized:
        return "No follow-up action required."
    for marker, hint in _NEXT_STEP_HINTS:
        if marker in normalized:
            return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Inspect the controller logs for more detail."


def _build_backup_rows(backups: list[Backup]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for backup in backups:
        rows.append(
            {
                "name": backup.name,
                "cluster": f"{backup.namespace}/{backup.cluster_name}",
                "status": backup.status.value,
                "consistent_at": (
                    format_target_time(backup.consistency_timestamp) if backup.consistency_timestamp else "n/a"
                ),
                "snapshots": str(len(backup.snapshots)),
                "snapshot_class": backup.snapshot_class,
                "message": _actionable_next_step(backup.message) if backup.message else "",
            }
        )
    return rows


def _build_cluster_rows(statuses: list[ClusterStatus]) -> list[dict[str, str]]:
    return [
        {
            "cluster": f"{status.namespace}/{status.name}",
            "recovery_state": status.recovery_state.value,
            "ready": "yes" if status.ready else "no",
            "replicas": f"{status.attached_replicas}/{status.required_replicas}",
            "last_error": _actionable_next_step(status.last_error) if status.last_error else "",
        }
        for status in statuses
    ]


def _label_for_backup(backup: Backup) -> str:
    consistent_at = format_target_time(backup.consistency_timestamp) if backup.consistency_timestamp else "n/a"
    return f"{backup.name} | cluster={backup.cluster_name} | consistent={consistent_at}Z"


def _restore_request_from_form(
    *,
    namespace: str,
    cluster_name: str,
    backup_name: str,
    target_kind: str,
    target_value: str,
    instances: int,
    require_full_topology: bool,
    keep_failed: bool,
) -> RestoreRequest:
    if not namespace.strip() or not cluster_name.strip():
        raise ValueError("Namespace and new cluster name are required.")
    if not backup_name.strip():
        raise ValueError("Choose a backup to restore from.")
    if instances < 1:
        raise ValueError("A restored cluster needs at least one instance.")
    if target_kind == _TARGET_KIND_RESTORE_POINT:
        target = parse_recovery_target(restore_point=target_value)
    else:
        target = parse_recovery_target(target_time=target_value)
    return RestoreRequest(
        namespace=namespace.strip(),
        cluster_name=cluster_name.strip(),
        backup_name=backup_name.strip(),
        target=target,
        replicas=instances - 1,
        require_full_topology=require_full_topology,
        keep_failed=keep_failed,
    )


def _validate_connection_inputs(*, auth_mode: str, kubeconfig_path_input: str, kubeconfig_text_input: str) -> str | None:
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        path_value = kubeconfig_path_input.strip()
        if not path_value:
            return "Kubeconfig path is required when using kubeconfig path authentication."
        expanded_path = Path(path_value).expanduser()
        if not expanded_path.is_file():
            return f"Kubeconfig path must point to an existing file: {expanded_path}"
        try:
            content = expanded_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as error:
            return f"Unable to read kubeconfig path {expanded_path}: {error}"
        return _validate_kubeconfig_content(kubeconfig_content=content, source_label=f"Kubeconfig file '{expanded_path}'")

    if auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        if not kubeconfig_text_input.strip():
            return "Paste kubeconfig content before connecting."
        return _validate_kubeconfig_content(
            kubeconfig_content=kubeconfig_text_input,
            source_label="Pasted kubeconfig",
        )

    if auth_mode == _AUTH_MODE_IN_CLUSTER and not _is_incluster_service_account_environment():
        return "In-cluster mode requires the Kubernetes service environment and a service-account token mount."
    return None


def _validate_kubeconfig_content(*, kubeconfig_content: str, source_label: str) -> str | None:
    try:
        parsed = yaml.safe_load(kubeconfig_content)
    except yaml.YAMLError as error:
        return f"{source_label} must be valid YAML: {error.__class__.__name__}."
    if not isinstance(parsed, dict):
        return f"{source_label} must be a YAML mapping."
    missing = [field for field in ("clusters", "contexts", "users") if not parsed.get(field)]
    if missing:
        return f"{source_label} must include at least one entry in: {', '.join(missing)}."
    return None


def _default_auth_mode() -> str:
    configured = os.getenv("NPP_DEFAULT_AUTH_MODE", "").strip().lower()
    if configured in {"kubeconfig", "path"}:
        return _AUTH_MODE_USE_KUBECONFIG_PATH
    if configured in {"paste", "kubeconfig_text"}:
        return _AUTH_MODE_PASTE_KUBECONFIG
    if configured in {"in-cluster", "in_cluster", "serviceaccount"}:
        return _AUTH_MODE_IN_CLUSTER
    if _is_incluster_service_account_environment():
        return _AUTH_MODE_IN_CLUSTER
    return _AUTH_MODE_USE_KUBECONFIG_PATH


def _is_incluster_service_account_environment() -> bool:
    return bool(
        os.getenv("KUBERNETES_SERVICE_HOST")
        and Path("/var/run/secrets/kubernetes.io/serviceaccount/token").exists()
    )


def _connect(base_config: AppConfig, *, auth_mode: str, kubeconfig_path_input: str, kubeconfig_text_input: str, context: str) -> Runtime:
    kubeconfig_path: str | None = None
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path = str(Path(kubeconfig_path_input).expanduser())
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_path = persist_kubeconfig_content(kubeconfig_text_input)

    config = replace(
        base_config,
        kubeconfig_path=kubeconfig_path,
        context=context or None,
        in_cluster=auth_mode == _AUTH_MODE_IN_CLUSTER,
    )
    clients = load_kubernetes_clients(
        kubeconfig_path=config.kubeconfig_path,
        context=config.context,
        in_cluster=config.in_cluster,
    )
    return build_runtime(config, clients=clients)


def _render_backup_section(runtime: Runtime, namespace: str) -> None:
    st.subheader("Take Volume Snapshot Backup")
    with st.form("backup"):
        cluster_name = st.text_input("Source cluster", value="")
        snapshot_class = st.text_input("VolumeSnapshotClass", value="")
        backup_name = st.text_input("Backup name (optional)", value="")
        submitted = st.form_submit_button("Take backup")
    if submitted:
        if not cluster_name.strip() or not snapshot_class.strip():
            st.error("Source cluster and VolumeSnapshotClass are required.")
        else:
            with st.spinner(f"Fencing {namespace}/{cluster_name} and snapshotting its volumes..."):
                try:
                    st.session_state.last_backup = runtime.take_backup(
                        BackupRequest(
                            namespace=namespace,
                            cluster_name=cluster_name.strip(),
                            snapshot_class=snapshot_class.strip(),
                            name=backup_name.strip() or None,
                        )
                    )
                except RuntimeError as error:
                    st.error(str(error))

    last_backup: Backup | None = st.session_state.last_backup
    if last_backup is not None:
        if last_backup.is_usable:
            st.success(f"Backup {last_backup.name} completed with {len(last_backup.snapshots)} snapshot(s).")
        else:
            st.error(_actionable_next_step(last_backup.message))

    with st.expander("Create named restore point"):
        point_cluster = st.text_input("Cluster", value="", key="restore_point_cluster")
        point_name = st.text_input("Restore point name", value="", key="restore_point_name")
        if st.button("Create restore point"):
            try:
                recorded_at = runtime.create_restore_point(
                    namespace=namespace,
                    cluster_name=point_cluster.strip(),
                    name=point_name,
                )
                st.success(f"Restore point {point_name.strip()} recorded at {format_target_time(recorded_at)}Z.")
            except (RecoveryTargetError, RuntimeError) as error:
                st.error(str(error))

    backups = runtime.metadata_store.list_backups(namespace=namespace, limit=100)
    if backups:
        st.dataframe(_build_backup_rows(backups), use_container_width=True, hide_index=True)
    else:
        st.info(f"No backups recorded for namespace {namespace} yet.")


def _render_restore_section(runtime: Runtime, namespace: str) -> None:
    st.subheader("Point-in-Time Restore")
    form_tab, yaml_tab = st.tabs(["Form", "YAML"])

    with form_tab:
        backups = runtime.completed_backups(namespace)
        labels = [_label_for_backup(backup) for backup in backups]
        label_to_backup = dict(zip(labels, backups, strict=False))
        with st.form("restore"):
            selected_label = st.selectbox("Backup", options=labels, index=None)
            cluster_name = st.text_input("New cluster name", value="")
            target_kind = st.radio("Recovery target", options=[_TARGET_KIND_TIME, _TARGET_KIND_RESTORE_POINT])
            target_value = st.text_input("Target (YYYY-MM-DDTHH:MM:SS or restore point name)", value="")
            instances = st.number_input("Instances", min_value=1, max_value=9, value=1, step=1)
            require_full_topology = st.checkbox("Ready only when every replica is attached", value=True)
            keep_failed = st.checkbox("Keep failed instances for inspection", value=False)
            submitted = st.form_submit_button("Request restore")
        if submitted:
            backup = label_to_backup.get(selected_label) if selected_label else None
            try:
                request = _restore_request_from_form(
                    namespace=namespace,
                    cluster_name=cluster_name,
                    backup_name=backup.name if backup else "",
                    target_kind=target_kind,
                    target_value=target_value,
                    instances=int(instances),
                    require_full_topology=require_full_topology,
                    keep_failed=keep_failed,
                )
                status = runtime.request_restore(request)
                st.success(f"Restore of {status.namespace}/{status.name} accepted ({status.recovery_state.value}).")
            except (ValueError, RestoreError) as error:
                st.error(_actionable_next_step(str(error)))

    with yaml_tab:
        manifest = st.text_area("Backup or Restore manifest", height=260)
        if st.button("Apply manifest"):
            try:
                request = load_manifest(manifest)
                if isinstance(request, BackupRequest):
                    st.session_state.last_backup = runtime.take_backup(request)
                    st.info(f"Backup {st.session_state.last_backup.name} is {st.session_state.last_backup.status.value}.")
                else:
                    status = runtime.request_restore(request)
                    st.success(f"Restore of {status.namespace}/{status.name} accepted.")
            except (ManifestError, ValueError, RuntimeError) as error:
                st.error(_actionable_next_step(str(error)))


def _render_cluster_section(runtime: Runtime) -> None:
    st.subheader("Restored Clusters")
    records = runtime.metadata_store.list_clusters()
    if not records:
        st.info("No restores requested yet.")
        return

    columns = st.columns(2)
    if columns[0].button("Reconcile now"):
        runtime.orchestrator.reconcile_once()
        records = runtime.metadata_store.list_clusters()
    st.dataframe(
        _build_cluster_rows([derive_cluster_status(record) for record in records]),
        use_container_width=True,
        hide_index=True,
    )

    active = [
        f"{record.namespace}/{record.name}" for record in records if record.recovery_state not in TERMINAL_RECOVERY_STATES
    ]
    if active:
        target = columns[1].selectbox("Abort restore", options=active, index=None)
        if target and columns[1].button("Abort", type="secondary"):
            namespace, name = target.split("/", 1)
            try:
                status = runtime.orchestrator.abort(namespace, name)
                st.warning(f"{target} is {status.recovery_state.value}: {status.last_error}")
            except RestoreError as error:
                st.error(str(error))


def main() -> None:
    st.set_page_config(page_title="Nerdy PG PITR", layout="wide")
    _initialize_state()

    try:
        base_config = AppConfig.from_env()
    except ConfigError as error:
        st.error(f"Invalid configuration: {error}")
        return

    st.title("Nerdy PG PITR")
    st.caption("Cold volume-snapshot backups, WAL archive coverage and point-in-time restores.")

    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_IN_CLUSTER, _AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_PASTE_KUBECONFIG]
    auth_mode = st.sidebar.radio("Authentication", options=auth_options, index=auth_options.index(_default_auth_mode()))
    context = st.sidebar.text_input("Context (optional)", value=base_config.context or "")
    kubeconfig_path_input = ""
    kubeconfig_text_input = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value=base_config.kubeconfig_path or "~/.kube/config")
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text_input = st.sidebar.text_area("Kubeconfig content", height=220)
    namespace = st.sidebar.text_input("Namespace", value="default").strip() or "default"
    st.sidebar.caption(f"WAL archive: s3://{base_config.archive_bucket or '<unset>'}/{base_config.archive_prefix}")
    st.sidebar.caption(f"Metadata DB path: {base_config.metadata_db_path}")

    if st.sidebar.button("Connect", type="primary"):
        connection_error = _validate_connection_inputs(
            auth_mode=auth_mode,
            kubeconfig_path_input=kubeconfig_path_input,
            kubeconfig_text_input=kubeconfig_text_input,
        )
        if connection_error:
            st.sidebar.error(connection_error)
        else:
            try:
                st.session_state.runtime = _connect(
                    base_config,
                    auth_mode=auth_mode,
                    kubeconfig_path_input=kubeconfig_path_input,
                    kubeconfig_text_input=kubeconfig_text_input,
                    context=context,
                )
                st.session_state.connected = True
                st.session_state.connection = {"auth_mode": auth_mode, "context": context or None}
                st.success("Connected to Kubernetes cluster.")
            except Exception as error:  # pylint: disable=broad-except
                st.session_state.connected = False
                st.session_state.runtime = None
                st.error(f"Connection failed: {error}")

    if st.sidebar.button("Disconnect"):
        st.session_state.connected = False
        st.session_state.runtime = None
        st.session_state.connection = {}
        st.session_state.last_backup = None

    runtime: Runtime | None = st.session_state.runtime
    if not st.session_state.connected or runtime is None:
        st.info("Connect to a cluster from the sidebar to take backups and request restores.")
        return

    _render_backup_section(runtime, namespace)
    _render_restore_section(runtime, namespace)
    _render_cluster_section(runtime)


if __name__ == "__main__":
    main()
