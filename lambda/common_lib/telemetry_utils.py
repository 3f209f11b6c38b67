"""
Telemetry sink selection

Handlers report business events and unexpected failures through a single
sink chosen once per container. Without TELEMETRY_NAMESPACE the sink is a
no-op, so call sites never need to check whether telemetry is configured.
"""

import logging
import os
from datetime import datetime, timezone

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

TELEMETRY_NAMESPACE = os.environ.get('TELEMETRY_NAMESPACE')
ENVIRONMENT = os.environ.get('ENVIRONMENT', 'development')


class TelemetrySink:
    """Interface for event and error reporting"""

    def track_event(self, name, properties=None):
        raise NotImplementedError

    def capture_exception(self, exc, context=None):
        raise NotImplementedError


class NoopTelemetrySink(TelemetrySink):

    def track_event(self, name, properties=None):
        pass

    def capture_exception(self, exc, context=None):
        pass


class CloudWatchTelemetrySink(TelemetrySink):
    """Publishes one count metric per event or error to CloudWatch"""

    def __init__(self, namespace, client=None, environment=ENVIRONMENT):
        self.namespace = namespace
        self.environment = environment
        self.client = client or boto3.client('cloudwatch')

    def track_event(self, name, properties=None):
        self._put_metric(name)

    def capture_exception(self, exc, context=None):
        logger.error(f"Captured {type(exc).__name__}: {exc} context={context or {}}")
        self._put_metric('UnhandledError', error_type=type(exc).__name__)

    def _put_metric(self, metric_name, error_type=None):
        dimensions = [{'Name': 'Environment', 'Value': self.environment}]
        if error_type:
            dimensions.append({'Name': 'ErrorType', 'Value': error_type})
        try:
            self.client.put_metric_data(
                Namespace=self.namespace,
                MetricData=[{
                    'MetricName': metric_name,
                    'Dimensions': dimensions,
                    'Timestamp': datetime.now(timezone.utc),
                    'Value': 1,
                    'Unit': 'Count'
                }]
            )
        except (BotoCoreError, ClientError) as e:
            # Telemetry must never fail the request it is reporting on
            logger.warning(f"Failed to publish metric {metric_name}: {str(e)}")


_sink = None

def get_telemetry_sink():
    global _sink
    if _sink is None:
        if TELEMETRY_NAMESPACE:
            _sink = CloudWatchTelemetrySink(TELEMETRY_NAMESPACE)
        else:
            _sink = NoopTelemetrySink()
    return _sink

def set_telemetry_sink(sink):
    """Replace the container-wide sink (tests and local tooling)"""
    global _sink
    _sink = sink
