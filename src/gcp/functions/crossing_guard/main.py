"""GCP Cloud Function handler for cross-environment IAM binding detection.

Triggered by a Pub/Sub topic that receives SetIamPolicy audit log entries
from an organization-level log sink. Each message is evaluated and, when
foreign service accounts are confirmed, the patched policy is written back
(unless DRY_RUN is enabled). A report of every run is published to
ALERT_TOPIC when configured.
"""

import base64
import json
import logging
from typing import Optional

import functions_framework
from google.cloud import pubsub_v1

from src.gcp.resource_manager.clients import (
    IAMServiceAccountClient,
    ResourceManagerHierarchyClient,
    ResourceManagerPolicyClient,
    ResourceManagerTagClient,
)
from src.shared.crossing_guard import (
    CrossingGuardConfig,
    CrossingGuardPipeline,
    PipelineOutcome,
    PipelineResult,
)
from src.shared.utils.lazy_init import LazyClient

logger = logging.getLogger(__name__)

_publisher = LazyClient(pubsub_v1.PublisherClient, name="pubsub_publisher")


def build_pipeline(config: CrossingGuardConfig) -> CrossingGuardPipeline:
    """Wire the pipeline to the Resource Manager and IAM APIs."""
    retries = config.api_num_retries
    return CrossingGuardPipeline(
        hierarchy_client=ResourceManagerHierarchyClient(num_retries=retries),
        service_account_client=IAMServiceAccountClient(num_retries=retries),
        tag_client=ResourceManagerTagClient(num_retries=retries),
        policy_client=ResourceManagerPolicyClient(num_retries=retries, policy_version=config.policy_version),
        config=config,
    )


def publish_report(result: PipelineResult, config: CrossingGuardConfig) -> Optional[str]:
    """Publish the run report to the alert topic, if one is configured."""
    if not config.alert_topic or result.outcome == PipelineOutcome.DECODE_ERROR:
        return None

    publisher = _publisher.get()
    topic_path = publisher.topic_path(config.gcp_project_id, config.alert_topic)
    data = json.dumps(result.to_dict()).encode("utf-8")
    message_id = publisher.publish(
        topic_path,
        data,
        outcome=result.outcome.value,
        resource=result.resource or "",
    ).result()

    logger.info(f"Published {result.outcome.value} report for {result.resource} as {message_id}")
    return message_id


@functions_framework.cloud_event
def process_iam_policy_change(cloud_event):
    """Entry point for SetIamPolicy notifications delivered through Pub/Sub."""
    config = CrossingGuardConfig.from_environment()

    try:
        data = base64.b64decode(cloud_event.data["message"]["data"])
    except (KeyError, TypeError, ValueError) as e:
        logger.error(f"Malformed Pub/Sub message: {e}")
        return

    result = build_pipeline(config).run(data)
    logger.info(
        f"Crossing guard finished for {result.resource}: {result.outcome.value} "
        f"at {result.stage.value} stage"
    )

    publish_report(result, config)

    # Surface apply failures so Pub/Sub redelivers and the run starts over.
    result.raise_for_apply()
