# hls_ingest/metrics.py
import logging
from typing import Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

log = logging.getLogger(__name__)


def put_metric_data_value(
    client,
    metric_name: str,
    value: float,
    namespace: str,
    dimensions: Optional[List[Dict[str, str]]] = None,
    unit: str = "Count",  # See AWS StandardUnit for valid values
) -> bool:
    """
    Puts a single metric data point to CloudWatch.

    Args:
        client: boto3 CloudWatch client.
        metric_name: The name of the metric.
        value: The value for the metric.
        namespace: The CloudWatch namespace for the metric.
        dimensions: A list of dimensions for the metric, e.g.,
                    [{'Name': 'Stage', 'Value': 'fetching'}].
        unit: The unit of the metric (e.g., 'Milliseconds', 'Count').

    Returns:
        True if the metric was sent successfully, False otherwise.
    """
    if dimensions is None:
        dimensions = []
    try:
        log.debug(f"Putting metric to CloudWatch: Namespace={namespace}, Name={metric_name}, Value={value}, Unit={unit}, Dimensions={dimensions}")
        client.put_metric_data(
            Namespace=namespace,
            MetricData=[
                {
                    "MetricName": metric_name,
                    "Dimensions": dimensions,
                    "Value": value,
                    "Unit": unit,
                },
            ],
        )
        return True
    except (ClientError, BotoCoreError) as e:
        log.error(f"Error sending metric '{metric_name}' to CloudWatch: {e}")
        return False


class MetricsPublisher:
    """Item-level metrics. A disabled publisher (or one without a client) is a no-op."""

    def __init__(self, client=None, namespace: str = "HlsIngest", enabled: bool = True):
        self.client = client
        self.namespace = namespace
        self.enabled = enabled and client is not None

    def _put(self, metric_name: str, value: float, dimensions=None, unit: str = "Count") -> None:
        if self.enabled:
            put_metric_data_value(self.client, metric_name, value, self.namespace, dimensions, unit)

    def item_succeeded(self) -> None:
        self._put("ItemSucceeded", 1)

    def item_skipped(self, reason: str) -> None:
        self._put("ItemSkipped", 1, [{"Name": "Reason", "Value": reason}])

    def item_failed(self, stage: str) -> None:
        self._put("ItemFailed", 1, [{"Name": "Stage", "Value": stage}])

    def stage_duration(self, stage: str, millis: float) -> None:
        self._put("StageDurationMs", millis, [{"Name": "Stage", "Value": stage}], unit="Milliseconds")
