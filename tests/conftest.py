import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from ingress_script_injector_service import IngressScriptInjectorService


def not_found():
    return ApiException(status=404, reason='Not Found')


class FakeCoreV1Api:
    """In-memory stand-in for the ConfigMap and Event parts of CoreV1Api"""

    def __init__(self):
        self.config_maps = {}
        self.reads = []
        self.events = []
        self.read_error = None

    def add_config_map(self, namespace, name, data):
        self.config_maps[(namespace, name)] = data

    def read_namespaced_config_map(self, name, namespace, **kwargs):
        self.reads.append((namespace, name))
        if self.read_error is not None:
            raise self.read_error
        if (namespace, name) not in self.config_maps:
            raise not_found()
        data = self.config_maps[(namespace, name)]
        return client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            data=dict(data) if data is not None else None
        )

    def create_namespaced_event(self, namespace, body, **kwargs):
        self.events.append(body)
        return body


class FakeNetworkingV1Api:
    """In-memory Ingress store with resourceVersion checks on replace"""

    def __init__(self):
        self.ingresses = {}
        self.reads = []
        self.updates = []
        self.before_replace = None
        self.replace_error = None

    def add_ingress(self, namespace, name, annotations=None):
        self.ingresses[(namespace, name)] = {
            'annotations': dict(annotations) if annotations is not None else None,
            'resource_version': 1,
        }

    def annotations(self, namespace, name):
        return self.ingresses[(namespace, name)]['annotations']

    def _build(self, namespace, name):
        entry = self.ingresses[(namespace, name)]
        annotations = entry['annotations']
        return client.V1Ingress(
            api_version='networking.k8s.io/v1',
            kind='Ingress',
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                uid=f"uid-{namespace}-{name}",
                resource_version=str(entry['resource_version']),
                annotations=dict(annotations) if annotations is not None else None
            )
        )

    def read_namespaced_ingress(self, name, namespace, **kwargs):
        self.reads.append((namespace, name))
        if (namespace, name) not in self.ingresses:
            raise not_found()
        return self._build(namespace, name)

    def replace_namespaced_ingress(self, name, namespace, body, **kwargs):
        if self.before_replace is not None:
            hook, self.before_replace = self.before_replace, None
            hook(self)
        if self.replace_error is not None:
            raise self.replace_error
        if (namespace, name) not in self.ingresses:
            raise not_found()

        entry = self.ingresses[(namespace, name)]
        if body.metadata.resource_version != str(entry['resource_version']):
            raise ApiException(status=409, reason='Conflict')

        entry['annotations'] = dict(body.metadata.annotations or {})
        entry['resource_version'] += 1
        self.updates.append((namespace, name, dict(entry['annotations'])))
        return self._build(namespace, name)

    def list_namespaced_ingress(self, namespace, **kwargs):
        return client.V1IngressList(items=[
            self._build(ns, name) for (ns, name) in self.ingresses if ns == namespace
        ])

    def list_ingress_for_all_namespaces(self, **kwargs):
        return client.V1IngressList(items=[
            self._build(ns, name) for (ns, name) in self.ingresses
        ])


@pytest.fixture
def core_api():
    return FakeCoreV1Api()


@pytest.fixture
def networking_api():
    return FakeNetworkingV1Api()


@pytest.fixture
def stop_flag():
    return {'stop': False}


@pytest.fixture
def service(core_api, networking_api, stop_flag, monkeypatch):
    monkeypatch.delenv('EMIT_EVENTS', raising=False)
    monkeypatch.delenv('MAX_CONFLICT_RETRIES', raising=False)
    return IngressScriptInjectorService(
        core_v1=core_api,
        networking_v1=networking_api,
        should_stop=lambda: stop_flag['stop']
    )
