"""
Kubernetes scrape target discovery.

Generates a directory of shipper configs for pods annotated with
``prometheus.io/scrape: "true"``, e.g.

    kubernetes-discovery/2025-07-25T12:00:00/monitoring_my-pod-<md5>.yaml

Every generated directory is validated as a whole and removed if
validation fails or if it is identical to the previous directory.
"""

import hashlib
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import yaml

from collector_engine.utils import latest_directory, utc_timestamp

logger = logging.getLogger(__name__)

SCRAPE_ANNOTATION = "prometheus.io/scrape"
PORT_ANNOTATION = "prometheus.io/port"
PATH_ANNOTATION = "prometheus.io/path"
DEFAULT_PORT = "9090"
DEFAULT_PATH = "/metrics"
DEFAULT_DIR_NAME = "0-default"
REQUEST_TIMEOUT = 10.0

DUMMY_VECTOR_CONFIG = {
    "transforms": {
        "kubernetes_discovery_test": {
            "type": "remap",
            "inputs": ["kubernetes_discovery_*"],
            "source": '.test = "ok"',
        }
    },
    "sinks": {
        "kubernetes_discovery_test_sink": {
            "type": "blackhole",
            "inputs": ["kubernetes_discovery_test"],
        }
    },
}

WORKLOAD_KINDS = {
    "ReplicaSet": "replicaset_name",
    "Deployment": "deployment_name",
    "StatefulSet": "statefulset_name",
    "DaemonSet": "daemonset_name",
}


def configs_identical(dir1: Path, dir2: Path) -> bool:
    """True when both directories hold the same YAML files with the same content."""
    files1 = sorted(p.name for p in Path(dir1).glob("*.yaml"))
    files2 = sorted(p.name for p in Path(dir2).glob("*.yaml"))
    if files1 != files2:
        return False
    return all(
        (Path(dir1) / name).read_bytes() == (Path(dir2) / name).read_bytes() for name in files1
    )


def generate_config(endpoint: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build the scrape source and labelling transform for one target.

    Returns {"filename": ..., "content": ...}; the filename carries an MD5
    of the content so changed targets produce new files.
    """
    source_name = f"prometheus_scrape_{endpoint['name']}"
    transform_name = f"kubernetes_discovery_{endpoint['name']}"

    tags = [
        ("k8s.namespace.name", endpoint.get("namespace")),
        ("k8s.pod.name", endpoint.get("pod")),
        ("k8s.node.name", endpoint.get("node_name")),
        ("k8s.pod.uid", endpoint.get("pod_uid")),
        ("k8s.pod.start_time", endpoint.get("start_time")),
        ("k8s.deployment.name", endpoint.get("deployment_name")),
        ("k8s.statefulset.name", endpoint.get("statefulset_name")),
        ("k8s.daemonset.name", endpoint.get("daemonset_name")),
        ("k8s.replicaset.name", endpoint.get("replicaset_name")),
    ]
    container_names = endpoint.get("container_names") or []
    if container_names:
        tags.append(("k8s.container.name", ",".join(container_names)))

    remap_lines = []
    for index, (tag, value) in enumerate(tags):
        # namespace and pod are always set, even when empty
        if value or index < 2:
            remap_lines.append(f'.tags."{tag}" = "{value or ""}"')

    config = {
        "sources": {
            source_name: {
                "type": "prometheus_scrape",
                "endpoints": [endpoint["endpoint"]],
                "scrape_interval_secs": 30,
                "instance_tag": "instance",
            }
        },
        "transforms": {
            transform_name: {
                "type": "remap",
                "inputs": [source_name],
                "source": "\n".join(remap_lines),
            }
        },
    }

    content_md5 = hashlib.md5(yaml.safe_dump(config, sort_keys=False).encode()).hexdigest()
    return {"filename": f"{endpoint['name']}-{content_md5}.yaml", "content": config}


def discovered_pods_config(count: int) -> Dict[str, Any]:
    """Static gauge reporting how many targets were discovered."""
    return {
        "sources": {
            "kubernetes_discovery_static_metrics": {
                "type": "static_metrics",
                "namespace": "",
                "metrics": [
                    {
                        "name": "collector_kubernetes_discovered_pods",
                        "kind": "absolute",
                        "value": {"gauge": {"value": count}},
                        "tags": {},
                    }
                ],
            }
        }
    }


class KubernetesDiscovery:
    """Rate-limited discovery of annotated pods and services."""

    def __init__(
        self,
        working_dir: str,
        run_validator: Callable[[List[Path]], Optional[str]],
        min_interval: float = 30,
        keep_count: int = 5,
        service_account_path: str = "/var/run/secrets/kubernetes.io/serviceaccount",
        node_name: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize discovery.

        Args:
            working_dir: Root of the collector's state
            run_validator: Shipper validation over a list of config paths
            min_interval: Minimum seconds between two discovery runs
            keep_count: Discovery directories to keep
            service_account_path: Mounted service account credentials
            node_name: Only discover pods on this node (all nodes when None)
            transport: httpx transport override
            clock: Monotonic clock used for rate limiting
        """
        self.base_dir = Path(working_dir) / "kubernetes-discovery"
        self.run_validator = run_validator
        self.min_interval = min_interval
        self.keep_count = keep_count
        self.service_account_path = Path(service_account_path)
        self.node_name = node_name
        self.transport = transport
        self.clock = clock
        self._last_run_time: Optional[float] = None
        self._client: Optional[httpx.AsyncClient] = None

    def in_kubernetes(self) -> bool:
        return bool(os.getenv("KUBERNETES_SERVICE_HOST")) and self.service_account_path.exists()

    def _read_service_account(self, name: str) -> Optional[str]:
        path = self.service_account_path / name
        if not path.exists():
            return None
        return path.read_text().strip()

    def _build_client(self) -> httpx.AsyncClient:
        host = os.getenv("KUBERNETES_SERVICE_HOST")
        port = os.getenv("KUBERNETES_SERVICE_PORT", "443")
        token = self._read_service_account("token")
        ca_path = self.service_account_path / "ca.crt"

        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        kwargs: Dict[str, Any] = {
            "base_url": f"https://{host}:{port}",
            "headers": headers,
            "timeout": REQUEST_TIMEOUT,
        }
        if self.transport is not None:
            kwargs["transport"] = self.transport
        elif ca_path.exists():
            kwargs["verify"] = str(ca_path)
        return httpx.AsyncClient(**kwargs)

    async def run(self) -> bool:
        """
        Discover targets if the rate limit allows.

        Returns True when a new, valid and different discovery directory
        was written.
        """
        now = self.clock()
        if self._last_run_time is not None and now - self._last_run_time < self.min_interval:
            logger.debug("Kubernetes discovery rate limited")
            return False
        self._last_run_time = now

        if not self.in_kubernetes():
            return False

        namespace = self._read_service_account("namespace") or "default"
        try:
            async with self._build_client() as client:
                self._client = client
                return await self.discover_and_update(namespace)
        except Exception as e:
            logger.error(f"Kubernetes discovery failed: {type(e).__name__}: {e}")
            return False
        finally:
            self._client = None

    async def _request(self, path: str) -> Dict[str, Any]:
        if self._client is None:
            raise RuntimeError("Kubernetes API client is only available during run()")
        response = await self._client.get(path)
        if response.status_code != 200:
            raise RuntimeError(
                f"Kubernetes API request failed: {response.status_code} {response.text[:200]}"
            )
        return response.json()

    async def discover_and_update(self, own_namespace: str) -> bool:
        latest_dir = latest_directory(self.base_dir)

        discovered: Dict[str, Dict[str, Any]] = {}
        for namespace in await self.get_namespaces(own_namespace):
            for service in await self.get_annotated_services(namespace):
                for endpoint in await self.get_service_endpoints(service, namespace):
                    if endpoint["name"] not in discovered:
                        discovered[endpoint["name"]] = generate_config(endpoint)

            for pod in await self.get_annotated_pods(namespace):
                endpoint = await self.get_pod_endpoint(pod, namespace)
                if endpoint and endpoint["name"] not in discovered:
                    discovered[endpoint["name"]] = generate_config(endpoint)

        new_dir = self.base_dir / utc_timestamp()
        if new_dir.exists():
            logger.debug(f"Kubernetes discovery: {new_dir.name} already exists, skipping")
            return False
        new_dir.mkdir(parents=True)

        for config in discovered.values():
            with open(new_dir / config["filename"], "w") as f:
                yaml.safe_dump(config["content"], f, sort_keys=False)
        with open(new_dir / "discovered_pods.yaml", "w") as f:
            yaml.safe_dump(discovered_pods_config(len(discovered)), f, sort_keys=False)

        if not self.validate_configs(new_dir):
            logger.error("Kubernetes discovery: validation failed")
            shutil.rmtree(new_dir, ignore_errors=True)
            return False

        if latest_dir and configs_identical(Path(latest_dir), new_dir):
            shutil.rmtree(new_dir, ignore_errors=True)
            return False

        logger.info(f"Kubernetes discovery: Generated configs for {len(discovered)} pods")
        self.cleanup_old_versions()
        return True

    def validate_configs(self, config_dir: Path) -> bool:
        """Validate discovered configs against a dummy consumer of their sources."""
        tmp_dir = config_dir.parent / f".validate-{config_dir.name}"
        shutil.rmtree(tmp_dir, ignore_errors=True)
        try:
            tmp_dir.mkdir(parents=True)
            dummy = tmp_dir / "vector.yaml"
            with open(dummy, "w") as f:
                yaml.safe_dump(DUMMY_VECTOR_CONFIG, f, sort_keys=False)

            error = self.run_validator([dummy] + sorted(config_dir.glob("*.yaml")))
            if error is not None:
                logger.error(f"Kubernetes discovery validation output:\n{error}")
                return False
            return True
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    def cleanup_old_versions(self, keep_count: Optional[int] = None) -> List[str]:
        keep = keep_count if keep_count is not None else self.keep_count
        if not self.base_dir.is_dir():
            return []

        versions = sorted(
            p
            for p in self.base_dir.iterdir()
            if p.is_dir() and p.name != DEFAULT_DIR_NAME and not p.name.startswith(".")
        )
        removed = []
        for path in versions[: max(0, len(versions) - keep)]:
            shutil.rmtree(path, ignore_errors=True)
            removed.append(path.name)
        return removed

    async def get_namespaces(self, own_namespace: str) -> List[str]:
        try:
            result = await self._request("/api/v1/namespaces")
            return [ns["metadata"]["name"] for ns in result.get("items", [])]
        except Exception as e:
            logger.info(
                f"Kubernetes discovery: Failed to list namespaces ({e}), using current namespace"
            )
            return [own_namespace]

    async def get_annotated_services(self, namespace: str) -> List[Dict[str, Any]]:
        services = await self._request(f"/api/v1/namespaces/{namespace}/services")
        return [
            s
            for s in services.get("items", [])
            if (s.get("metadata", {}).get("annotations") or {}).get(SCRAPE_ANNOTATION) == "true"
        ]

    async def get_annotated_pods(self, namespace: str) -> List[Dict[str, Any]]:
        pods = await self._request(f"/api/v1/namespaces/{namespace}/pods")
        selected = []
        for pod in pods.get("items", []):
            annotations = pod.get("metadata", {}).get("annotations") or {}
            if annotations.get(SCRAPE_ANNOTATION) != "true":
                continue
            if (pod.get("status") or {}).get("phase") != "Running":
                continue
            if self.node_name and (pod.get("spec") or {}).get("nodeName") != self.node_name:
                continue
            selected.append(pod)
        return selected

    async def get_workload_info(self, pod: Dict[str, Any], namespace: str) -> Dict[str, Optional[str]]:
        """Resolve the owning workload, following ReplicaSets to their Deployment."""
        info: Dict[str, Optional[str]] = {key: None for key in WORKLOAD_KINDS.values()}
        owners = pod.get("metadata", {}).get("ownerReferences") or []
        if not owners:
            return info

        kind = owners[0].get("kind")
        name = owners[0].get("name")
        if kind not in WORKLOAD_KINDS:
            return info
        info[WORKLOAD_KINDS[kind]] = name

        if kind == "ReplicaSet":
            try:
                replicaset = await self._request(
                    f"/apis/apps/v1/namespaces/{namespace}/replicasets/{name}"
                )
                rs_owners = replicaset.get("metadata", {}).get("ownerReferences") or []
                if rs_owners and rs_owners[0].get("kind") == "Deployment":
                    info["deployment_name"] = rs_owners[0].get("name")
            except Exception as e:
                logger.info(f"Kubernetes discovery: Failed to get ReplicaSet info for {name}: {e}")

        return info

    async def _pod_metadata(self, pod: Dict[str, Any], namespace: str) -> Dict[str, Any]:
        containers = (pod.get("spec") or {}).get("containers") or []
        metadata = {
            "pod_uid": pod.get("metadata", {}).get("uid"),
            "node_name": (pod.get("spec") or {}).get("nodeName"),
            "start_time": (pod.get("status") or {}).get("startTime"),
            "container_names": [c.get("name") for c in containers if c.get("name")],
        }
        metadata.update(await self.get_workload_info(pod, namespace))
        return metadata

    async def get_service_endpoints(
        self, service: Dict[str, Any], namespace: str
    ) -> List[Dict[str, Any]]:
        service_name = service["metadata"]["name"]
        annotations = service["metadata"].get("annotations") or {}
        port = annotations.get(PORT_ANNOTATION, DEFAULT_PORT)
        path = annotations.get(PATH_ANNOTATION, DEFAULT_PATH)

        endpoints = await self._request(f"/api/v1/namespaces/{namespace}/endpoints/{service_name}")

        results = []
        for subset in endpoints.get("subsets") or []:
            for address in subset.get("addresses") or []:
                pod_name = (address.get("targetRef") or {}).get("name")
                metadata: Dict[str, Any] = {}
                if pod_name:
                    try:
                        pod = await self._request(f"/api/v1/namespaces/{namespace}/pods/{pod_name}")
                        if self.node_name and (pod.get("spec") or {}).get("nodeName") != self.node_name:
                            continue
                        metadata = await self._pod_metadata(pod, namespace)
                    except Exception as e:
                        logger.info(f"Kubernetes discovery: Failed to get pod info for {pod_name}: {e}")
                        if self.node_name:
                            continue

                results.append(
                    {
                        "name": f"{namespace}_{pod_name or service_name}",
                        "endpoint": f"http://{address.get('ip')}:{port}{path}",
                        "namespace": namespace,
                        "pod": pod_name,
                        "service": service_name,
                        **metadata,
                    }
                )

        return results

    async def get_pod_endpoint(self, pod: Dict[str, Any], namespace: str) -> Optional[Dict[str, Any]]:
        annotations = pod["metadata"].get("annotations") or {}
        pod_name = pod["metadata"]["name"]
        pod_ip = (pod.get("status") or {}).get("podIP")
        if not pod_ip:
            return None

        port = annotations.get(PORT_ANNOTATION, DEFAULT_PORT)
        path = annotations.get(PATH_ANNOTATION, DEFAULT_PATH)

        endpoint = {
            "name": f"{namespace}_{pod_name}",
            "endpoint": f"http://{pod_ip}:{port}{path}",
            "namespace": namespace,
            "pod": pod_name,
            "service": None,
        }
        endpoint.update(await self._pod_metadata(pod, namespace))
        return endpoint
