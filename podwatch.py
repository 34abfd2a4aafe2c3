#!/usr/bin/env python3
"""
Pod Image Upgrade Watcher

Watches pods in a Kubernetes cluster and checks whether newer semantic-version
tags exist for the images their containers run. Available upgrades are
recorded as Events on the pod; the pod itself is only ever annotated with the
time of its last check.
"""

__version__ = "1.0.0"

import argparse
import json
import logging
import os
import re
import sys
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import jsonschema
import urllib3
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from freshness import RepositoryTagSet, UpgradeCandidate, classify_upgrades
from imageref import ImageReference, InvalidReference, parse_reference
from notify import build_payload, send_notifications
from registry import FetchError, RegistryClient, parse_rfc3339


# Constants
MARKER_ANNOTATION = "podwatch.io/upgrade-check-time"
EVENT_COMPONENT = "pod-upgrade-check"
EVENT_GENERATE_NAME = "pod-upgrade-check-"
EVENT_REASON = "NewImageVersionAvailable"
DEFAULT_CHECK_INTERVAL = "24h"
DEFAULT_SYNC_INTERVAL = "15m"
DEFAULT_WORKERS = 8
MAX_LISTED_CANDIDATES = 5
WATCH_RETRY_DELAY = 5

logger = logging.getLogger(__name__)

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "registries": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "username": {"type": "string"},
                    "password": {"type": "string"},
                    "insecure": {"type": "boolean"}
                }
            }
        },
        "notifications": {
            "type": "object",
            "properties": {
                "ntfy": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "priority": {"enum": ["min", "low", "default", "high", "urgent"]},
                        "headers": {"type": "object"}
                    },
                    "required": ["url"]
                },
                "webhook": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "method": {"enum": ["POST", "PUT", "post", "put"]},
                        "headers": {"type": "object"},
                        "body_template": {"type": "string"}
                    },
                    "required": ["url"]
                }
            }
        },
        "fetch_created_at": {"type": "boolean"}
    }
}

_DURATION_RE = re.compile(r'^(?:(?P<h>\d+)h)?(?:(?P<m>\d+)m)?(?:(?P<s>\d+)s)?$')


def parse_duration(value: str) -> timedelta:
    """Parse '3600', '24h', '90m', '1h30m' or '45s' into a timedelta."""
    value = str(value).strip()
    if value.isdigit():
        return timedelta(seconds=int(value))
    match = _DURATION_RE.match(value)
    if not value or not match:
        raise ValueError(f"Invalid duration '{value}'")
    return timedelta(
        hours=int(match.group('h') or 0),
        minutes=int(match.group('m') or 0),
        seconds=int(match.group('s') or 0),
    )


def format_marker(ts: datetime) -> str:
    """Render a timestamp as RFC 3339 in UTC."""
    return ts.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def parse_marker(value: Optional[str]) -> Optional[datetime]:
    """Read a check marker. Malformed or offset-less values count as absent."""
    if not value:
        return None
    try:
        return parse_rfc3339(value)
    except ValueError:
        return None


def should_check(marker: Union[None, str, datetime], now: datetime, interval: timedelta) -> bool:
    """Return True when a pod is due for a check.

    A missing or unreadable marker makes the pod due; otherwise it is due
    once ``marker + interval`` is not in the future.
    """
    if isinstance(marker, str):
        marker = parse_marker(marker)
    if marker is None:
        return True
    return marker + interval <= now


def format_upgrade_message(ref: ImageReference, candidates: List[UpgradeCandidate]) -> str:
    """Summarize upgrade candidates for one container in a single line."""
    listed = []
    for candidate in candidates[:MAX_LISTED_CANDIDATES]:
        entry = candidate.tag
        if candidate.created_at is not None:
            entry += f" ({format_marker(candidate.created_at)})"
        listed.append(entry)

    message = f"New image version(s) available: {ref} -> {', '.join(listed)}"
    if len(candidates) > MAX_LISTED_CANDIDATES:
        message += f" and {len(candidates) - MAX_LISTED_CANDIDATES} more"
    return message


@dataclass
class Container:
    name: str
    image: str


@dataclass
class WorkloadUnit:
    """Snapshot of a pod as delivered by the watch. Init containers come first."""
    namespace: str
    name: str
    uid: str
    resource_version: str
    annotations: Dict[str, str] = field(default_factory=dict)
    containers: List[Container] = field(default_factory=list)


@dataclass
class CheckResult:
    """Outcome of one check pass over a pod."""
    unit: WorkloadUnit
    checked: bool = False
    messages: List[str] = field(default_factory=list)
    fetched: List[Tuple[str, str]] = field(default_factory=list)
    failed_repositories: List[Tuple[str, str]] = field(default_factory=list)
    marker_written: bool = False


class SingleFlight:
    """Tracks keys with work in flight so overlapping requests can coalesce."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active = set()

    def acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._active:
                return False
            self._active.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._active.discard(key)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._active


class KubernetesCluster:
    """Pod conversion, Event creation and marker patching against the core/v1 API."""

    def __init__(self, core_api: client.CoreV1Api, dry_run: bool = False):
        self.core_api = core_api
        self.dry_run = dry_run

    @staticmethod
    def pod_to_unit(pod: client.V1Pod) -> WorkloadUnit:
        meta = pod.metadata
        spec = pod.spec
        containers = []
        if spec is not None:
            for c in list(spec.init_containers or []) + list(spec.containers or []):
                containers.append(Container(name=c.name, image=c.image or ''))
        return WorkloadUnit(
            namespace=meta.namespace,
            name=meta.name,
            uid=meta.uid,
            resource_version=meta.resource_version,
            annotations=dict(meta.annotations or {}),
            containers=containers,
        )

    @staticmethod
    def build_event(unit: WorkloadUnit, message: str, now: datetime) -> Dict[str, Any]:
        timestamp = format_marker(now)
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": EVENT_GENERATE_NAME,
                "namespace": unit.namespace,
            },
            "involvedObject": {
                "apiVersion": "v1",
                "kind": "Pod",
                "namespace": unit.namespace,
                "name": unit.name,
                "uid": unit.uid,
                "resourceVersion": unit.resource_version,
            },
            "source": {"component": EVENT_COMPONENT},
            "type": "Normal",
            "reason": EVENT_REASON,
            "message": message,
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
        }

    def emit_event(self, unit: WorkloadUnit, message: str, now: datetime) -> bool:
        """Record an Event against the pod. Returns False on failure."""
        if self.dry_run:
            logger.info(f"[DRY RUN] Would create event for {unit.namespace}/{unit.name}: {message}")
            return True

        try:
            self.core_api.create_namespaced_event(
                namespace=unit.namespace,
                body=self.build_event(unit, message, now),
            )
            return True
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            logger.error(f"Failed to create event for {unit.namespace}/{unit.name}: {e}")
            return False

    def write_marker(self, unit: WorkloadUnit, now: datetime) -> bool:
        """Annotate the pod with the check time. Returns False on failure."""
        value = format_marker(now)
        if self.dry_run:
            logger.info(f"[DRY RUN] Would annotate {unit.namespace}/{unit.name} with {MARKER_ANNOTATION}={value}")
            return True

        try:
            self.core_api.patch_namespaced_pod(
                name=unit.name,
                namespace=unit.namespace,
                body={"metadata": {"annotations": {MARKER_ANNOTATION: value}}},
            )
            return True
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            logger.error(f"Failed to annotate pod {unit.namespace}/{unit.name}: {e}")
            return False


class PodUpgradeChecker:
    def __init__(self, cluster: KubernetesCluster, registry: RegistryClient,
                 check_interval: timedelta = parse_duration(DEFAULT_CHECK_INTERVAL),
                 fetch_created_at: bool = False,
                 notifications: Optional[Dict[str, Any]] = None,
                 workers: int = DEFAULT_WORKERS,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize the checker.

        Args:
            cluster: Cluster adapter used for Events and the check marker
            registry: Registry client used to list tags
            check_interval: Minimum time between checks of the same pod
            fetch_created_at: Look up creation times of upgrade candidates
            notifications: Optional ntfy/webhook configuration
            workers: Maximum number of pods checked concurrently
            clock: Returns the current time (timezone-aware)
        """
        self.cluster = cluster
        self.registry = registry
        self.check_interval = check_interval
        self.fetch_created_at = fetch_created_at
        self.notifications = notifications
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._inflight = SingleFlight()
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='podwatch')

    def submit(self, unit: WorkloadUnit) -> Optional[Future]:
        """Schedule a check, coalescing with any check already running for the pod."""
        if not self._inflight.acquire(unit.uid):
            logger.debug(f"Check already in flight for {unit.namespace}/{unit.name}, coalescing")
            return None
        try:
            return self._executor.submit(self._run, unit)
        except RuntimeError:
            self._inflight.release(unit.uid)
            raise

    def _run(self, unit: WorkloadUnit) -> Optional[CheckResult]:
        try:
            return self.check_unit(unit)
        except Exception:
            logger.exception(f"Unexpected error checking {unit.namespace}/{unit.name}")
            return None
        finally:
            self._inflight.release(unit.uid)

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _fetch_tag_sets(self, refs: List[Tuple[Container, ImageReference]],
                        result: CheckResult) -> Dict[Tuple[str, str], Optional[RepositoryTagSet]]:
        """List tags once per distinct repository. Failed repositories map to None."""
        tag_sets: Dict[Tuple[str, str], Optional[RepositoryTagSet]] = {}
        for _, ref in refs:
            key = (ref.registry, ref.repository)
            if key in tag_sets:
                continue
            try:
                raw_tags = self.registry.list_tags(ref.registry, ref.repository)
            except FetchError as e:
                logger.error(f"Could not list repository tags for {ref.name}: {e}")
                tag_sets[key] = None
                result.failed_repositories.append(key)
                continue
            tag_sets[key] = RepositoryTagSet.from_tags(ref.registry, ref.repository, raw_tags)
            result.fetched.append(key)
        return tag_sets

    def _add_created_at(self, ref: ImageReference, candidates: List[UpgradeCandidate]) -> None:
        for candidate in candidates:
            registry, repository, tag = ref.with_tag(candidate.tag, candidate.version).split()
            try:
                candidate.created_at = self.registry.get_created_at(registry, repository, tag)
            except FetchError as e:
                logger.warning(f"Failed to get creation time for {registry}/{repository}:{tag}: {e}")
            except Exception:
                logger.exception(f"Unexpected error getting creation time for {registry}/{repository}:{tag}")

    def _check_container(self, unit: WorkloadUnit, container: Container, ref: ImageReference,
                         tag_set: RepositoryTagSet, now: datetime, result: CheckResult) -> None:
        candidates = classify_upgrades(ref, tag_set.tags)
        if not candidates:
            logger.debug(f"No new images available for {ref} (version: {ref.version})")
            return

        if self.fetch_created_at:
            self._add_created_at(ref, candidates)

        message = format_upgrade_message(ref, candidates)
        logger.info(
            f"New images available for {unit.namespace}/{unit.name} "
            f"container {container.name}: {ref} -> {[c.tag for c in candidates]}"
        )
        result.messages.append(message)
        self.cluster.emit_event(unit, message, now)
        send_notifications(self.notifications, build_payload(unit.namespace, unit.name, container.name, message))

    def check_unit(self, unit: WorkloadUnit, now: Optional[datetime] = None) -> CheckResult:
        """Run one check pass over a pod.

        Skips the pod entirely if it was checked within the interval.
        Otherwise every container image is compared against its repository's
        tags and an Event is recorded per container with upgrades. An error
        in one container does not stop the others, and the check marker is
        written whatever happened along the way.
        """
        now = now or self._clock()
        result = CheckResult(unit=unit)

        marker = unit.annotations.get(MARKER_ANNOTATION)
        if not should_check(marker, now, self.check_interval):
            logger.debug(f"Skipping recently checked pod {unit.namespace}/{unit.name} (last: {marker})")
            return result
        result.checked = True
        logger.info(f"Checking pod {unit.namespace}/{unit.name}")

        try:
            refs: List[Tuple[Container, ImageReference]] = []
            for container in unit.containers:
                try:
                    refs.append((container, parse_reference(container.image)))
                except InvalidReference as e:
                    logger.warning(
                        f"Ignoring invalid image in {unit.namespace}/{unit.name} "
                        f"container {container.name}: {e}"
                    )

            tag_sets = self._fetch_tag_sets(refs, result)

            for container, ref in refs:
                tag_set = tag_sets[(ref.registry, ref.repository)]
                if tag_set is None:
                    logger.debug(f"Skipping container {container.name}: tags for {ref.name} unavailable")
                    continue
                try:
                    self._check_container(unit, container, ref, tag_set, now, result)
                except Exception:
                    logger.exception(
                        f"Error checking {unit.namespace}/{unit.name} container {container.name} ({ref})"
                    )
        finally:
            result.marker_written = self.cluster.write_marker(unit, now)
        return result


class PodWatcher:
    """Lists and watches pods, handing every snapshot to the checker.

    Each watch stream is bounded by the sync interval; when it ends all pods
    are listed again, which doubles as a periodic resync.
    """

    def __init__(self, core_api: client.CoreV1Api, checker: PodUpgradeChecker,
                 namespaces: Optional[List[str]] = None,
                 sync_interval: timedelta = parse_duration(DEFAULT_SYNC_INTERVAL),
                 retry_delay: float = WATCH_RETRY_DELAY):
        self.core_api = core_api
        self.checker = checker
        self.namespaces = namespaces or []
        self.sync_interval = sync_interval
        self.retry_delay = retry_delay
        self._stop = threading.Event()
        self._watches: List[watch.Watch] = []
        self._lock = threading.Lock()

    def _list_call(self, namespace: Optional[str]):
        if namespace:
            return self.core_api.list_namespaced_pod, {'namespace': namespace}
        return self.core_api.list_pod_for_all_namespaces, {}

    def dispatch(self, pod: client.V1Pod) -> None:
        unit = KubernetesCluster.pod_to_unit(pod)
        logger.debug(f"Got pod {unit.namespace}/{unit.name}")
        self.checker.submit(unit)

    def resync(self, namespace: Optional[str] = None) -> str:
        """List pods, dispatch each one, and return the list's resourceVersion."""
        list_fn, kwargs = self._list_call(namespace)
        pods = list_fn(**kwargs)
        for pod in pods.items or []:
            self.dispatch(pod)
        return pods.metadata.resource_version

    def _stream(self, namespace: Optional[str], resource_version: str) -> None:
        list_fn, kwargs = self._list_call(namespace)
        w = watch.Watch()
        with self._lock:
            self._watches.append(w)
        try:
            for event in w.stream(list_fn, resource_version=resource_version,
                                  timeout_seconds=int(self.sync_interval.total_seconds()),
                                  **kwargs):
                if self._stop.is_set():
                    break
                event_type = event.get('type')
                if event_type in ('ADDED', 'MODIFIED'):
                    self.dispatch(event['object'])
                elif event_type == 'ERROR':
                    raw = event.get('raw_object') or {}
                    raise ApiException(status=raw.get('code'), reason=raw.get('message'))
        finally:
            w.stop()
            with self._lock:
                self._watches.remove(w)

    def watch_loop(self, namespace: Optional[str] = None) -> None:
        scope = namespace or 'all namespaces'
        while not self._stop.is_set():
            try:
                resource_version = self.resync(namespace)
                logger.debug(f"Synced pods in {scope} at resourceVersion {resource_version}")
                self._stream(namespace, resource_version)
            except ApiException as e:
                if e.status == 410:
                    logger.info(f"Watch of {scope} expired, relisting")
                    continue
                logger.error(f"Error watching pods in {scope}: {e}")
                self._stop.wait(self.retry_delay)
            except urllib3.exceptions.HTTPError as e:
                logger.error(f"Connection error watching pods in {scope}: {e}")
                self._stop.wait(self.retry_delay)

    def run(self) -> None:
        """Watch until stop() is called. One thread per configured namespace."""
        if not self.namespaces:
            self.watch_loop()
            return

        threads = [
            threading.Thread(target=self.watch_loop, args=(ns,), name=f"watch-{ns}", daemon=True)
            for ns in self.namespaces
        ]
        for t in threads:
            t.start()
        while not self._stop.is_set() and any(t.is_alive() for t in threads):
            self._stop.wait(1)

    def stop(self) -> None:
        self._stop.set()
        with self._lock:
            for w in self._watches:
                w.stop()


def setup_logging(level: str) -> None:
    """Setup logging configuration."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))

    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)

    # The kubernetes client logs every request at DEBUG
    logging.getLogger('kubernetes').setLevel(max(root.level, logging.INFO))


def load_config(config_file: str) -> Dict[str, Any]:
    """Load and validate configuration from a JSON file."""
    try:
        with open(config_file, 'r') as f:
            cfg = json.load(f)

        jsonschema.validate(cfg, CONFIG_SCHEMA)
        return cfg

    except FileNotFoundError:
        logger.error(f"Config file {config_file} not found")
        raise
    except json.JSONDecodeError as e:
        logger.error(f"Error parsing config file: {e}")
        raise
    except jsonschema.ValidationError as e:
        logger.error(f"Configuration validation failed: {e.message}")
        raise


def load_core_api(kubeconfig: Optional[str] = None, context: Optional[str] = None) -> client.CoreV1Api:
    """Build a CoreV1Api from in-cluster config, falling back to kubeconfig."""
    if not kubeconfig and not context:
        try:
            config.load_incluster_config()
            logger.info("Using in-cluster Kubernetes config")
            return client.CoreV1Api()
        except config.ConfigException:
            logger.debug("Not running in a cluster, trying kubeconfig")

    config.load_kube_config(config_file=kubeconfig, context=context)
    logger.info(f"Using kubeconfig {kubeconfig or '(default)'} context {context or '(current)'}")
    return client.CoreV1Api()


def main():
    parser = argparse.ArgumentParser(
        description='Watch pods for newer image versions'
    )
    parser.add_argument(
        '--config',
        default=os.environ.get('CONFIG_FILE') or None,
        help='Path to optional configuration JSON file (env: CONFIG_FILE)'
    )
    parser.add_argument(
        '--kubeconfig',
        default=os.environ.get('KUBECONFIG') or None,
        help='Path to kubeconfig; in-cluster config is tried first when unset (env: KUBECONFIG)'
    )
    parser.add_argument(
        '--context',
        default=os.environ.get('KUBE_CONTEXT') or None,
        help='Kubeconfig context to use (env: KUBE_CONTEXT)'
    )
    parser.add_argument(
        '--namespace',
        default=os.environ.get('WATCH_NAMESPACES', ''),
        help='Comma separated namespaces to watch, empty for all (env: WATCH_NAMESPACES)'
    )
    parser.add_argument(
        '--check-interval',
        type=parse_duration,
        default=os.environ.get('CHECK_INTERVAL', DEFAULT_CHECK_INTERVAL),
        help='Minimum time between checks of the same pod (env: CHECK_INTERVAL, default: 24h)'
    )
    parser.add_argument(
        '--sync-interval',
        type=parse_duration,
        default=os.environ.get('SYNC_INTERVAL', DEFAULT_SYNC_INTERVAL),
        help='Time between full pod resyncs from the API server (env: SYNC_INTERVAL, default: 15m)'
    )
    parser.add_argument(
        '--workers',
        type=int,
        default=int(os.environ.get('WORKERS', str(DEFAULT_WORKERS))),
        help=f'Pods checked concurrently (env: WORKERS, default: {DEFAULT_WORKERS})'
    )
    parser.add_argument(
        '--fetch-created-at',
        action='store_true',
        default=os.environ.get('FETCH_CREATED_AT', '').lower() == 'true',
        help='Look up creation times of newer tags, one extra registry call each (env: FETCH_CREATED_AT)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        default=os.environ.get('DRY_RUN', '').lower() == 'true',
        help='Log events and annotations instead of writing them (env: DRY_RUN)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )

    args = parser.parse_args()
    setup_logging(args.log_level)

    try:
        cfg = load_config(args.config) if args.config else {}
        core_api = load_core_api(args.kubeconfig, args.context)
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        sys.exit(1)

    namespaces = [ns.strip() for ns in args.namespace.split(',') if ns.strip()]
    checker = PodUpgradeChecker(
        KubernetesCluster(core_api, dry_run=args.dry_run),
        RegistryClient(cfg.get('registries')),
        check_interval=args.check_interval,
        fetch_created_at=args.fetch_created_at or cfg.get('fetch_created_at', False),
        notifications=cfg.get('notifications'),
        workers=args.workers,
    )
    watcher = PodWatcher(core_api, checker, namespaces, args.sync_interval)

    if args.dry_run:
        logger.info("=== DRY RUN MODE ===")
    logger.info(
        f"Watching pods in {', '.join(namespaces) or 'all namespaces'}, "
        f"check interval {args.check_interval}, sync interval {args.sync_interval}"
    )
    try:
        watcher.run()
    except KeyboardInterrupt:
        logger.info("Exiting...")
        watcher.stop()
    finally:
        checker.shutdown()


if __name__ == '__main__':
    main()
