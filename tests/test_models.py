"""Tests for shared models, settings and exceptions."""

import pytest
from pydantic import ValidationError

from modelhost.config import LifecycleSettings, PoolSettings, RetrySettings, Settings
from modelhost.exceptions import PortInUseError, ServiceStartError
from modelhost.models import (
    EnvironmentType,
    ErrorKind,
    ErrorRecord,
    ExecutionResult,
    HostIdentity,
    HostKind,
    OperationResult,
    ServerConfig,
    ServiceDescriptor,
    StopReport,
)


class TestHostIdentity:
    """Test host identity keys."""

    def test_remote_key(self):
        identity = HostIdentity(host="10.0.0.5", port=2222, username="ml")
        assert identity.key == "10.0.0.5:2222@ml"

    def test_local_key(self):
        assert HostIdentity.local().key == "local"
        assert HostIdentity.local().kind == HostKind.LOCAL

    def test_identity_is_hashable_and_frozen(self):
        identity = HostIdentity(host="a", username="b")
        assert identity == HostIdentity(host="a", username="b")
        with pytest.raises(ValidationError):
            identity.host = "c"

    def test_server_config_splits_identity_and_credentials(self):
        server = ServerConfig(id="s1", host="gpu", username="root", password="secret")
        assert server.identity.key == "gpu:22@root"
        assert server.credentials.password == "secret"
        assert "secret" not in repr(server.credentials)


class TestExecutionResult:
    """Test execution result helpers."""

    def test_failure_helper(self):
        result = ExecutionResult.failure("boom")
        assert not result.success
        assert result.exit_code == -1
        assert result.stderr == "boom"
        assert result.error == "boom"
        assert result.attempts == 1
        assert not result.retried

    def test_output_strips(self):
        assert ExecutionResult(success=True, exit_code=0, stdout="  hi\n").output == "hi"


class TestErrorRecord:
    """Test error records."""

    def test_retryable_is_derived_from_kind(self):
        assert ErrorRecord(kind=ErrorKind.TIMEOUT, message="x").retryable
        assert ErrorRecord(kind=ErrorKind.NETWORK, message="x").retryable
        assert not ErrorRecord(kind=ErrorKind.PERMISSION_DENIED, message="x").retryable
        assert not ErrorRecord(kind=ErrorKind.UNKNOWN, message="x").retryable

    def test_retryable_is_serialized(self):
        data = ErrorRecord(kind=ErrorKind.TEMPORARY, message="x").model_dump(mode="json")
        assert data["retryable"] is True
        assert data["kind"] == "temporary"


class TestServiceDescriptor:
    """Test service descriptor validation."""

    def test_minimal_descriptor(self):
        descriptor = ServiceDescriptor(id="svc", server_id="s1", start_command="python server.py",
                                       log_path="/tmp/svc.log")
        assert descriptor.env_type == EnvironmentType.SYSTEM
        assert descriptor.pid is None

    def test_empty_command_rejected(self):
        with pytest.raises(ValidationError):
            ServiceDescriptor(id="svc", server_id="s1", start_command="   ", log_path="/tmp/x.log")

    def test_env_name_required_for_conda(self):
        with pytest.raises(ValidationError):
            ServiceDescriptor(id="svc", server_id="s1", start_command="python a.py",
                              log_path="/tmp/x.log", env_type=EnvironmentType.CONDA)


class TestReports:
    """Test stop reports and operation results."""

    def test_empty_stop_report_means_already_stopped(self):
        report = StopReport()
        assert report.already_stopped
        assert report.message == "Service already stopped"

    def test_stop_report_message(self):
        report = StopReport(killed_pids=[10, 11])
        assert not report.already_stopped
        assert "2 process" in report.message

    def test_operation_result_helpers(self):
        assert OperationResult.ok({"a": 1}).data == {"a": 1}
        failed = OperationResult.fail("nope")
        assert not failed.success
        assert failed.error == "nope"


class TestSettings:
    """Test settings defaults and validation."""

    def test_defaults(self):
        settings = Settings()
        assert settings.retry.max_retries == 3
        assert settings.retry.initial_delay == 1.0
        assert settings.timeout.timeout == 30.0
        assert settings.pool.soft_max_size == 10
        assert settings.pool.idle_timeout == 300.0
        assert settings.pool.max_age == 3600.0
        assert settings.lifecycle.frameworks == ["vllm", "lmdeploy", "sglang"]

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("MODELHOST_RETRY_MAX_RETRIES", "5")
        assert RetrySettings().max_retries == 5

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            RetrySettings(initial_delay=-1)
        with pytest.raises(ValidationError):
            LifecycleSettings(kill_batch_size=0)
        with pytest.raises(ValidationError):
            PoolSettings(soft_max_size=0)


class TestExceptions:
    """Test exception messages."""

    def test_start_error_carries_log_tail(self):
        error = ServiceStartError("did not come up", "Traceback: CUDA out of memory")
        assert error.log_tail == "Traceback: CUDA out of memory"
        assert "CUDA out of memory" in str(error)

    def test_port_in_use(self):
        error = PortInUseError(8000)
        assert error.port == 8000
        assert "8000" in str(error)
