"""Tests for Lambda trigger parsing (EventBridge -> SQS unwrapping)."""

import json
import pytest

from content_pipeline.lambda_ingest.envelope import TriggerEvent, parse_sqs_record_body


EVENTBRIDGE_WRAPPED = {
    "version": "0",
    "id": "eb-event-id-123",
    "detail-type": "ContentItem.process",
    "source": "content-pipeline.ingest",
    "detail": {
        "content_item_id": "0192f0c4-5a1e-7b7e-9d2a-3c1f2e4b5a6d",
        "organization_id": "org_test_001",
    },
}


class TestParseSqsRecordBody:
    def test_extracts_trigger_from_eventbridge_wrapper(self):
        result = parse_sqs_record_body(json.dumps(EVENTBRIDGE_WRAPPED))
        assert result == TriggerEvent(
            content_item_id="0192f0c4-5a1e-7b7e-9d2a-3c1f2e4b5a6d",
            reprocess=False,
            organization_id="org_test_001",
        )

    def test_reprocess_flag(self):
        body = {**EVENTBRIDGE_WRAPPED, "detail": {"content_item_id": "abc", "reprocess": True}}
        result = parse_sqs_record_body(json.dumps(body))
        assert result.reprocess is True
        assert result.organization_id is None

    def test_invalid_json_raises(self):
        with pytest.raises(ValueError, match="Invalid JSON"):
            parse_sqs_record_body("not json {")

    def test_missing_detail_raises(self):
        with pytest.raises(ValueError, match="Missing 'detail'"):
            parse_sqs_record_body(json.dumps({"version": "0", "source": "x"}))

    def test_non_object_body_raises(self):
        with pytest.raises(ValueError, match="Missing 'detail'"):
            parse_sqs_record_body(json.dumps(["detail"]))

    def test_missing_content_item_id_raises(self):
        body = {**EVENTBRIDGE_WRAPPED, "detail": {"organization_id": "org"}}
        with pytest.raises(ValueError, match="content_item_id"):
            parse_sqs_record_body(json.dumps(body))
