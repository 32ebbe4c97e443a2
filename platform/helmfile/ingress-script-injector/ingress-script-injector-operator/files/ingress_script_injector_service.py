#!/usr/bin/env python3
"""
Ingress Script Injector Operator Service
Injects ConfigMap-held scripts into Ingress nginx configuration snippets
"""

import os
import sys
import json
import time
import signal
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from kubernetes import client, config
from kubernetes.client.rest import ApiException


def resolve_log_level(name: Optional[str]) -> int:
    """Map a LOG_LEVEL name to a logging level, falling back to INFO"""
    level = logging.getLevelName((name or 'INFO').upper())
    return level if isinstance(level, int) else logging.INFO


# Configure logging
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
logging.basicConfig(
    level=resolve_log_level(LOG_LEVEL),
    format='%(asctime)s - %(levelname)s - %(message)s',
    stream=sys.stdout
)
logger = logging.getLogger(__name__)

if not isinstance(logging.getLevelName(LOG_LEVEL.upper()), int):
    logger.warning(f"Unknown LOG_LEVEL {LOG_LEVEL!r}, using INFO")


CONFIGURATION_SNIPPET = 'nginx.ingress.kubernetes.io/configuration-snippet'
# JSON object of injection point name -> directive last written into the snippet
INJECTED_DIRECTIVES = 'digitalist.cloud/injected-directives'
SCRIPT_KEY = 'script'
EVENT_COMPONENT = 'ingress-script-injector'

OUTCOME_UPDATED = 'updated'
OUTCOME_UNCHANGED = 'unchanged'
OUTCOME_NOT_FOUND = 'not-found'


class InjectionPoint(NamedTuple):
    name: str
    annotation: str
    anchor: str
    # 'before' puts the script in front of the anchor, 'after' behind it
    position: str


# Resolution order is the order of this table
INJECTION_POINTS = (
    InjectionPoint('head-end', 'digitalist.cloud/add-script-head-end', '</head>', 'before'),
    InjectionPoint('head-start', 'digitalist.cloud/add-script-head-start', '<head>', 'after'),
    InjectionPoint('body-start', 'digitalist.cloud/add-script-body-start', '<body>', 'after'),
    InjectionPoint('body-end', 'digitalist.cloud/add-script-body-end', '</body>', 'before'),
)


# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    global shutdown_requested
    logger.info(f"[shutdown] Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


class ReconcileCancelled(Exception):
    """Raised when shutdown is requested in the middle of a reconciliation"""


class ScriptSourceError(Exception):
    """A script ConfigMap could not be resolved for one injection point"""


def format_directive(point: InjectionPoint, script: str) -> str:
    """Build the sub_filter directive inserting script next to the point's anchor"""
    if point.position == 'before':
        replacement = f"{script}{point.anchor}"
    else:
        replacement = f"{point.anchor}{script}"
    return f"sub_filter '{point.anchor}' '{replacement}';"


def render_block(directives: Dict[str, str]) -> str:
    """Directives keyed by point name, rendered one per line in table order"""
    return ''.join(
        f"{directives[point.name]}\n" for point in INJECTION_POINTS if point.name in directives
    )


def load_injected_directives(annotations: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Read back the directives recorded by the previous write"""
    raw = (annotations or {}).get(INJECTED_DIRECTIVES)
    if not raw:
        return {}
    try:
        recorded = json.loads(raw)
    except ValueError:
        logger.warning(f"Ignoring unparseable {INJECTED_DIRECTIVES} annotation")
        return {}
    if not isinstance(recorded, dict):
        logger.warning(f"Ignoring {INJECTED_DIRECTIVES} annotation that is not an object")
        return {}
    return {key: value for key, value in recorded.items() if isinstance(value, str)}


def merge_snippet(existing: Optional[str], previous_block: str, block: str) -> str:
    """
    Append block after the existing snippet content.

    previous_block is the text this controller wrote last time. Its last
    occurrence is removed before appending; everything else in the snippet
    is kept as is. When the previous block was edited by someone else it no
    longer matches and nothing is removed.
    """
    base = existing or ''
    if previous_block:
        index = base.rfind(previous_block)
        if index != -1:
            base = base[:index] + base[index + len(previous_block):]
    if base and not base.endswith('\n'):
        base += '\n'
    return base + block


def referenced_config_maps(annotations: Optional[Dict[str, str]]) -> List[str]:
    """ConfigMap names referenced by injection annotations, in table order"""
    annotations = annotations or {}
    return [annotations[point.annotation] for point in INJECTION_POINTS if point.annotation in annotations]


class IngressScriptInjectorService:
    """Main service for injecting scripts into Ingress configuration snippets"""

    def __init__(self,
                 core_v1: Optional[client.CoreV1Api] = None,
                 networking_v1: Optional[client.NetworkingV1Api] = None,
                 should_stop: Optional[Callable[[], bool]] = None):
        if core_v1 is None or networking_v1 is None:
            # Load Kubernetes config from service account, kubeconfig outside the cluster
            try:
                config.load_incluster_config()
            except config.ConfigException:
                config.load_kube_config()

        self.v1 = core_v1 or client.CoreV1Api()
        self.networking_v1 = networking_v1 or client.NetworkingV1Api()
        self.should_stop = should_stop or (lambda: shutdown_requested)

        self.request_timeout = float(os.getenv('REQUEST_TIMEOUT_SECONDS', '10'))
        self.max_conflict_retries = max(1, int(os.getenv('MAX_CONFLICT_RETRIES', '5')))
        self.emit_events = os.getenv('EMIT_EVENTS', 'true').lower() in ('1', 'true', 'yes')

        logger.info(f"Ingress Script Injector service initialized "
                    f"(timeout={self.request_timeout}s, conflict_retries={self.max_conflict_retries}, "
                    f"events={self.emit_events})")

    def _check_cancelled(self):
        if self.should_stop():
            raise ReconcileCancelled("shutdown requested")

    def reconcile_ingress(self, namespace: str, name: str) -> Dict:
        """Reconcile one Ingress, re-running from a fresh read on update conflicts"""
        for attempt in range(1, self.max_conflict_retries + 1):
            try:
                result, ingress = self._reconcile_ingress_once(namespace, name)
                break
            except ApiException as e:
                if e.status != 409 or attempt == self.max_conflict_retries:
                    raise
                logger.info(f"Conflict updating Ingress {namespace}/{name}, "
                            f"retrying ({attempt}/{self.max_conflict_retries})")

        # Events are recorded once per call, not once per conflict retry
        if result['failures']:
            self._emit_event(ingress, 'Warning', 'ScriptSourceNotResolved',
                             '; '.join(f"{failure['point']}: {failure['reason']}"
                                       for failure in result['failures']))
        if result['outcome'] == OUTCOME_UPDATED:
            self._emit_event(ingress, 'Normal', 'ScriptsInjected',
                             "Injected script directives into configuration snippet")
        return result

    def _reconcile_ingress_once(self, namespace: str, name: str) -> Tuple[Dict, Optional[client.V1Ingress]]:
        result = {'outcome': OUTCOME_UNCHANGED, 'failures': [], 'snippet': None}

        self._check_cancelled()
        try:
            ingress = self.networking_v1.read_namespaced_ingress(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout
            )
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Ingress {namespace}/{name} no longer exists, nothing to do")
                result['outcome'] = OUTCOME_NOT_FOUND
                return result, None
            raise

        annotations = ingress.metadata.annotations or {}
        previous = load_injected_directives(annotations)

        # One read per ConfigMap, even when several points name it
        scripts = {}
        directives = {}
        resolved = 0
        for point in INJECTION_POINTS:
            if point.annotation not in annotations:
                continue

            config_map_name = annotations[point.annotation]
            if config_map_name not in scripts:
                try:
                    scripts[config_map_name] = self._resolve_script(namespace, config_map_name)
                except ScriptSourceError as e:
                    scripts[config_map_name] = e

            script = scripts[config_map_name]
            if isinstance(script, ScriptSourceError):
                logger.warning(f"Skipping {point.name} script for Ingress {namespace}/{name}: {script}")
                result['failures'].append({
                    'point': point.name,
                    'configMap': config_map_name,
                    'reason': str(script)
                })
                # The directive written earlier stays while its source is unavailable
                if point.name in previous:
                    directives[point.name] = previous[point.name]
                continue

            directives[point.name] = format_directive(point, script)
            resolved += 1

        if not resolved:
            logger.info(f"No scripts resolved for Ingress {namespace}/{name}, skipping update")
            return result, ingress

        current = annotations.get(CONFIGURATION_SNIPPET)
        desired = merge_snippet(current, render_block(previous), render_block(directives))
        recorded = json.dumps(directives)
        result['snippet'] = desired

        if desired == current and annotations.get(INJECTED_DIRECTIVES) == recorded:
            logger.info(f"Ingress {namespace}/{name} configuration snippet already up to date")
            return result, ingress

        if ingress.metadata.annotations is None:
            ingress.metadata.annotations = {}
        ingress.metadata.annotations[CONFIGURATION_SNIPPET] = desired
        ingress.metadata.annotations[INJECTED_DIRECTIVES] = recorded

        self._check_cancelled()
        # resourceVersion from the read makes this a conditional update
        self.networking_v1.replace_namespaced_ingress(
            name=name,
            namespace=namespace,
            body=ingress,
            _request_timeout=self.request_timeout
        )
        result['outcome'] = OUTCOME_UPDATED

        logger.info(f"✓ Updated Ingress {namespace}/{name} with {len(directives)} script directive(s)")
        return result, ingress

    def _resolve_script(self, namespace: str, config_map_name: str) -> str:
        """Fetch the script text from a ConfigMap in the Ingress namespace"""
        if not config_map_name:
            raise ScriptSourceError("annotation names no ConfigMap")

        self._check_cancelled()
        try:
            config_map = self.v1.read_namespaced_config_map(
                name=config_map_name,
                namespace=namespace,
                _request_timeout=self.request_timeout
            )
        except ApiException as e:
            if e.status == 404:
                raise ScriptSourceError(f"ConfigMap {namespace}/{config_map_name} not found")
            raise

        data = config_map.data or {}
        if SCRIPT_KEY not in data:
            raise ScriptSourceError(f"ConfigMap {namespace}/{config_map_name} does not contain '{SCRIPT_KEY}' key")
        return data[SCRIPT_KEY]

    def _emit_event(self, ingress, event_type: str, reason: str, message: str):
        """Record a Kubernetes Event on the Ingress"""
        if not self.emit_events:
            return

        metadata = ingress.metadata
        timestamp = datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                generate_name=f"{metadata.name}.",
                namespace=metadata.namespace
            ),
            involved_object=client.V1ObjectReference(
                api_version='networking.k8s.io/v1',
                kind='Ingress',
                name=metadata.name,
                namespace=metadata.namespace,
                uid=metadata.uid,
                resource_version=metadata.resource_version
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=client.V1EventSource(component=EVENT_COMPONENT),
            first_timestamp=timestamp,
            last_timestamp=timestamp,
            count=1
        )

        try:
            self.v1.create_namespaced_event(
                namespace=metadata.namespace,
                body=event,
                _request_timeout=self.request_timeout
            )
        except Exception as e:
            logger.warning(f"Failed to record {reason} event for Ingress {metadata.namespace}/{metadata.name}: {e}")

    def reconcile_config_map(self, namespace: str, name: str) -> List[Dict]:
        """Reconcile every Ingress in the namespace that references the ConfigMap"""
        self._check_cancelled()
        ingresses = self.networking_v1.list_namespaced_ingress(
            namespace=namespace,
            _request_timeout=self.request_timeout
        )

        targets = [
            (ing.metadata.namespace, ing.metadata.name)
            for ing in ingresses.items
            if name in referenced_config_maps(ing.metadata.annotations)
        ]
        logger.info(f"ConfigMap {namespace}/{name} is referenced by {len(targets)} Ingress(es)")
        return self._reconcile_many(targets)

    def reconcile_all(self) -> List[Dict]:
        """Reconcile all Ingresses carrying an injection annotation"""
        logger.info("=== Starting full reconciliation ===")

        self._check_cancelled()
        ingresses = self.networking_v1.list_ingress_for_all_namespaces(
            _request_timeout=self.request_timeout
        )

        targets = [
            (ing.metadata.namespace, ing.metadata.name)
            for ing in ingresses.items
            if referenced_config_maps(ing.metadata.annotations)
        ]
        logger.info(f"Found {len(targets)} Ingress(es) with script annotations")

        results = self._reconcile_many(targets)
        logger.info("=== Reconciliation complete ===")
        return results

    def _reconcile_many(self, targets: List[Tuple[str, str]]) -> List[Dict]:
        """Reconcile each target, carrying on past failures and raising the first one at the end"""
        results = []
        first_error = None

        for namespace, name in targets:
            try:
                results.append(self.reconcile_ingress(namespace, name))
            except ReconcileCancelled:
                raise
            except Exception as e:
                logger.error(f"Failed to reconcile Ingress {namespace}/{name}: {e}", exc_info=True)
                if first_error is None:
                    first_error = e

        if first_error is not None:
            raise first_error
        return results

    def process_binding_context(self, binding_context: str):
        """Process a shell-operator binding context"""
        context_data = json.loads(binding_context)

        if not context_data:
            raise ValueError("Empty binding context")

        synchronized = False
        for binding in context_data:
            binding_type = binding.get('type')

            if binding_type in ('Synchronization', 'Schedule'):
                if not synchronized:
                    self.reconcile_all()
                    synchronized = True
                continue

            if binding_type != 'Event':
                logger.warning(f"Ignoring binding of unknown type: {binding_type}")
                continue

            self._handle_event(binding)

    def _handle_event(self, binding: Dict):
        obj = binding.get('object') or {}
        watch_event = binding.get('watchEvent', '')
        kind = obj.get('kind', '')
        metadata = obj.get('metadata', {})
        namespace = metadata.get('namespace')
        name = metadata.get('name')

        if not namespace or not name:
            logger.warning(f"No object identity in {kind or 'unknown'} event, skipping")
            return

        logger.info(f"Handling {watch_event} event for {kind} {namespace}/{name}")

        if kind == 'Ingress':
            if watch_event == 'Deleted':
                logger.info(f"Ingress {namespace}/{name} was deleted, nothing to do")
                return
            self.reconcile_ingress(namespace, name)
        elif kind == 'ConfigMap':
            self.reconcile_config_map(namespace, name)
        else:
            logger.warning(f"Unknown kind: {kind}")


def handle_request_file(service: IngressScriptInjectorService, shared_dir: str, req_file: str):
    """Process one request file and write its response file"""
    req_path = os.path.join(shared_dir, req_file)
    request_id = req_file.replace('request-', '').replace('.json', '')
    resp_path = os.path.join(shared_dir, f'response-{request_id}.txt')

    with open(req_path, 'r') as f:
        binding_context = f.read()

    logger.info(f"[handler] Processing request from {req_file} ({len(binding_context)} bytes)")

    try:
        service.process_binding_context(binding_context)
        response = "OK"
        logger.info("[handler] Successfully processed request")
    except Exception as e:
        response = f"ERROR: {e}"
        logger.error(f"Error processing request: {e}", exc_info=True)

    with open(resp_path, 'w') as f:
        f.write(response)

    logger.info(f"[handler] Wrote response to {os.path.basename(resp_path)}")


def watch_requests(service: IngressScriptInjectorService, shared_dir: str = '/shared'):
    """Watch for request files and process them"""
    logger.info(f"Ingress Script Injector service watching {shared_dir}")

    processed = set()
    last_reconcile = 0
    reconcile_interval = int(os.getenv('RESYNC_INTERVAL_SECONDS', '300'))

    while not shutdown_requested:
        try:
            # Periodic full reconciliation
            current_time = time.time()
            if reconcile_interval > 0 and current_time - last_reconcile > reconcile_interval:
                last_reconcile = current_time
                try:
                    service.reconcile_all()
                except ReconcileCancelled:
                    break
                except Exception as e:
                    logger.error(f"Periodic reconciliation failed: {e}")

            if not os.path.exists(shared_dir):
                logger.warning(f"Shared directory {shared_dir} does not exist, waiting...")
                time.sleep(1)
                continue

            files = os.listdir(shared_dir)
            request_files = sorted(f for f in files if f.startswith('request-') and f.endswith('.json'))

            for req_file in request_files:
                if shutdown_requested:
                    logger.info("[shutdown] Stopping request processing...")
                    break

                if req_file in processed:
                    continue

                try:
                    handle_request_file(service, shared_dir, req_file)
                except OSError as e:
                    logger.error(f"Error handling {req_file}: {e}")
                    request_id = req_file.replace('request-', '').replace('.json', '')
                    try:
                        with open(os.path.join(shared_dir, f'response-{request_id}.txt'), 'w') as f:
                            f.write(f"ERROR: {e}")
                    except OSError:
                        logger.error(f"Could not write error response for {req_file}")
                processed.add(req_file)

            # Forget requests whose files the hook has cleaned up
            for filename in list(processed):
                if not os.path.exists(os.path.join(shared_dir, filename)):
                    processed.discard(filename)

            time.sleep(0.1)

        except KeyboardInterrupt:
            logger.info("[shutdown] Keyboard interrupt received")
            break
        except Exception as e:
            if not shutdown_requested:
                logger.error(f"Error in watch loop: {e}", exc_info=True)
                time.sleep(1)
            else:
                break

    logger.info("[shutdown] Service stopped cleanly")


def main():
    # Register signal handlers for graceful shutdown
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        service = IngressScriptInjectorService()
        watch_requests(service, os.getenv('SHARED_DIR', '/shared'))
    except Exception as e:
        logger.critical(f"FATAL ERROR: {e}", exc_info=True)
        sys.exit(1)

    sys.exit(0)


if __name__ == '__main__':
    main()
