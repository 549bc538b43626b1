"""Alert sinks besides the in-memory AlertStore.

KafkaSink     publishes each alert as JSON to a topic (one message per alert)
MetricsSink   Prometheus counters/gauges, written as a node-exporter textfile
FanoutSink    forwards every alert to several sinks

All of them may be called from many rule tasks at once.
"""

import json
import threading

from confluent_kafka import Producer
from confluent_kafka.admin import AdminClient, NewTopic
from prometheus_client import CollectorRegistry, Counter, Gauge, write_to_textfile

from hunter.engine import summarize


class FanoutSink:

    def __init__(self, *sinks):
        self.sinks = [s for s in sinks if s is not None]

    def emit(self, alert) -> None:
        for sink in self.sinks:
            sink.emit(alert)


# ---------------------------------------------------------------------------
# Kafka
# ---------------------------------------------------------------------------

def _ensure_topic(bootstrap_servers, topic):
    """Create the output topic if it doesn't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    fs = admin.create_topics([NewTopic(topic, num_partitions=3, replication_factor=1)])
    for t, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{t}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{t}' already exists")
            else:
                raise


class KafkaSink:
    """Alerts → Kafka, keyed by rule id so one rule's alerts stay ordered."""

    def __init__(self, producer, topic: str = "alerts"):
        self.producer = producer
        self.topic = topic
        self.produced = 0
        self._lock = threading.Lock()

    @classmethod
    def connect(cls, bootstrap_servers: str, topic: str = "alerts") -> "KafkaSink":
        _ensure_topic(bootstrap_servers, topic)
        return cls(Producer({"bootstrap.servers": bootstrap_servers}), topic)

    def emit(self, alert) -> None:
        value = json.dumps(alert.to_dict()).encode("utf-8")
        with self._lock:
            self.producer.produce(self.topic, key=alert.rule_id.encode("utf-8"), value=value)
            self.produced += 1
            # Batch flush every 1000 alerts (producer buffers internally)
            if self.produced % 1000 == 0:
                self.producer.flush()

    def close(self) -> None:
        self.producer.flush()


# ---------------------------------------------------------------------------
# Prometheus
# ---------------------------------------------------------------------------

class MetricsSink:
    """Per-run metrics.  A batch job has no /metrics endpoint to scrape, so
    the registry is written to a textfile for node-exporter to pick up."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.alerts_total = Counter(
            "hunter_alerts_total",
            "Alerts emitted",
            ["rule_id", "level"],
            registry=self.registry,
        )
        self.rule_duration = Gauge(
            "hunter_rule_duration_seconds",
            "Wall-clock time spent matching one rule",
            ["rule_id"],
            registry=self.registry,
        )
        self.unique_alerts = Gauge(
            "hunter_unique_alerts",
            "Rules that alerted at least once, by level",
            ["level"],
            registry=self.registry,
        )
        self.records_scanned = Gauge(
            "hunter_records_scanned",
            "Records in the batch",
            registry=self.registry,
        )

    def emit(self, alert) -> None:
        self.alerts_total.labels(rule_id=alert.rule_id, level=alert.level).inc()

    def observe_run(self, rules, record_count: int) -> None:
        self.records_scanned.set(record_count)
        for rule in rules:
            self.rule_duration.labels(rule_id=rule.id).set(rule.duration)
        for level, count in summarize(rules).items():
            self.unique_alerts.labels(level=level.label).set(count)

    def write(self, path) -> None:
        write_to_textfile(str(path), self.registry)
