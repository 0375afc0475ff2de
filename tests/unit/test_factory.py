"""
Unit Tests — Orchestrator factory and AWS wiring

Coverage targets:
  ✅ Settings.aws_credentials(): static keys only when both are set
  ✅ build_stage_registry() hands region + keys to every AWS adapter
  ✅ Unknown store / scheduler backends are rejected
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from docpipe.core.config import Settings
from docpipe.pipeline.definition import DEFAULT_STAGE_ORDER
from docpipe.pipeline.factory import build_record_store, build_scheduler, build_stage_registry


@pytest.mark.unit
class TestAwsCredentials:

    def test_both_keys_set(self):
        settings = Settings(aws_access_key_id="AKIATEST", aws_secret_access_key="secret")
        assert settings.aws_credentials() == {
            "aws_access_key_id": "AKIATEST",
            "aws_secret_access_key": "secret",
        }

    @pytest.mark.parametrize("key_id,secret", [("", ""), ("AKIATEST", ""), ("", "secret")])
    def test_incomplete_keys_fall_back_to_default_chain(self, key_id, secret):
        settings = Settings(aws_access_key_id=key_id, aws_secret_access_key=secret)
        assert settings.aws_credentials() == {}


@pytest.mark.unit
class TestBuildStageRegistry:

    def test_adapters_receive_region_and_keys(self):
        settings = Settings(
            aws_region="eu-west-1",
            aws_access_key_id="AKIATEST",
            aws_secret_access_key="secret",
        )
        expected = {
            "region": "eu-west-1",
            "credentials": {"aws_access_key_id": "AKIATEST", "aws_secret_access_key": "secret"},
        }

        with patch("docpipe.clients.textract.TextractOCRClient") as textract, \
             patch("docpipe.clients.comprehend.ComprehendSentimentClient") as comprehend, \
             patch("docpipe.storage.s3.S3ResultWriter") as writer:
            registry = build_stage_registry(settings)

        textract.assert_called_once_with(**expected)
        comprehend.assert_called_once_with(**expected)
        writer.assert_called_once_with(**expected)
        assert all(name in registry for name in DEFAULT_STAGE_ORDER)


@pytest.mark.unit
class TestBackendSelection:

    def test_unknown_record_store_backend(self):
        with pytest.raises(ValueError, match="record store backend"):
            build_record_store(Settings(record_store_backend="redis"))

    def test_unknown_scheduler_backend(self):
        with pytest.raises(ValueError, match="scheduler backend"):
            build_scheduler(Settings(scheduler_backend="threads"))
