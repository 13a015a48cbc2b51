"""Tests for utility functions."""

import pytest

from cftunnel.common.exceptions import ValidationError
from cftunnel.common.utils import (
    METRICS_PORT_BASE,
    METRICS_PORT_SPAN,
    build_hostname,
    mask_sensitive_data,
    metrics_port_for,
    normalize_target,
    random_subdomain,
    remote_tunnel_name,
    sanitize_log_data,
    split_subdomain,
    validate_non_empty_string,
    validate_port,
)


class TestValidatePort:
    """Test port validation function."""

    def test_valid_ports(self):
        validate_port(1, "Test port")
        validate_port(8080, "Alt HTTP port")
        validate_port(65535, "Max port")

    def test_invalid_ports(self):
        with pytest.raises(ValidationError, match="Test port must be between 1 and 65535"):
            validate_port(0, "Test port")

        with pytest.raises(ValidationError, match="Test port must be between 1 and 65535"):
            validate_port(65536, "Test port")

    def test_non_integer_ports(self):
        with pytest.raises(ValidationError):
            validate_port("80", "Test port")  # type: ignore


class TestValidateNonEmptyString:
    """Test non-empty string validation function."""

    def test_valid_strings(self):
        assert validate_non_empty_string("  test  ", "Field") == "test"

    def test_invalid_strings(self):
        with pytest.raises(ValidationError, match="Field cannot be empty"):
            validate_non_empty_string("   ", "Field")


class TestNormalizeTarget:
    """Test target normalization."""

    @pytest.mark.parametrize(
        "target,expected",
        [
            ("localhost:3000", "http://localhost:3000"),
            ("127.0.0.1:8080", "http://127.0.0.1:8080"),
            ("http://localhost:3000", "http://localhost:3000"),
            ("https://internal.lan", "https://internal.lan"),
            ("  localhost:5000  ", "http://localhost:5000"),
        ],
    )
    def test_valid_targets(self, target, expected):
        assert normalize_target(target) == expected

    def test_unsupported_scheme(self):
        with pytest.raises(ValidationError, match="Unsupported target scheme"):
            normalize_target("tcp://localhost:22")

    def test_invalid_port(self):
        with pytest.raises(ValidationError):
            normalize_target("localhost:99999")

    def test_empty_target(self):
        with pytest.raises(ValidationError, match="Target cannot be empty"):
            normalize_target("")


class TestHostnames:
    """Test subdomain and hostname handling."""

    def test_bare_subdomain(self):
        assert split_subdomain("MyApp", "example.com") == "myapp"
        assert build_hostname("api.dev", "example.com") == "api.dev.example.com"

    def test_full_hostname_is_accepted(self):
        assert split_subdomain("api.example.com", "example.com") == "api"
        assert build_hostname("api.example.com.", "Example.com") == "api.example.com"

    def test_zone_apex_is_rejected(self):
        with pytest.raises(ValidationError, match="apex"):
            split_subdomain("example.com", "example.com")

    @pytest.mark.parametrize("name", ["-app", "app-", "my_app", "a" * 64, "api..dev"])
    def test_invalid_labels(self, name):
        with pytest.raises(ValidationError, match="Invalid tunnel name"):
            split_subdomain(name, "example.com")

    def test_remote_tunnel_name(self):
        assert remote_tunnel_name("myapp") == "cftunnel-myapp"
        assert remote_tunnel_name("api.dev") == "cftunnel-api-dev"
        assert remote_tunnel_name("myapp", "work") == "cftunnel-work-myapp"


class TestMetricsPort:
    """Test the per-tunnel metrics port."""

    def test_stable_and_in_range(self):
        port = metrics_port_for("myapp")

        assert port == metrics_port_for("myapp")
        assert METRICS_PORT_BASE <= port < METRICS_PORT_BASE + METRICS_PORT_SPAN

    def test_differs_between_names(self):
        ports = {metrics_port_for(name) for name in ("api", "web", "docs", "admin")}
        assert len(ports) > 1


class TestRandomSubdomain:
    def test_format(self):
        name = random_subdomain()

        assert name.startswith("tun-")
        assert len(name) == 10
        assert split_subdomain(name, "example.com") == name


class TestMaskSensitiveData:
    """Test sensitive data masking function."""

    def test_mask_normal_strings(self):
        assert mask_sensitive_data("secret123") == "*****t123"
        assert mask_sensitive_data("password", show_chars=2) == "******rd"

    def test_mask_short_and_empty(self):
        assert mask_sensitive_data("abc") == "***"
        assert mask_sensitive_data("") == "<None>"
        assert mask_sensitive_data(None) == "<None>"


class TestSanitizeLogData:
    """Test log data sanitization function."""

    def test_sanitize_sensitive_fields(self):
        data = {"api_token": "abcdefgh1234", "name": "myapp", "TunnelSecret": "s3cr3tvalue"}

        result = sanitize_log_data(data)

        assert result["api_token"] == "********1234"
        assert result["name"] == "myapp"
        assert result["TunnelSecret"] == "*******alue"
