"""End-to-end tests for build_user_data()."""

import base64
import json
import logging
import random
import re

import pytest

from agent_army.bootstrap.compress import GZIP_BASE64, decompress
from agent_army.bootstrap.errors import PayloadTooLargeError, UnusedBindingError
from agent_army.bootstrap.pipeline import build_user_data, summarize, with_gateway_token
from agent_army.bootstrap.secrets import PLACEHOLDER_RE, SecretBinding


class TestBuildUserData:
    """Normalizer -> Generator -> Interpolator -> Compressor."""

    def test_payload_holds_interpolated_script(self, options, full_secrets):
        result = build_user_data(options, full_secrets)
        script = decompress(result["payload"])
        assert not PLACEHOLDER_RE.search(script)
        assert f"\nANTHROPIC_API_KEY='{full_secrets['ANTHROPIC_API_KEY']}'\n" in script
        assert result["script_bytes"] == len(script.encode("utf-8"))

    def test_template_and_summary_hold_no_values(self, options, full_secrets):
        result = build_user_data(options, full_secrets)
        summary_text = json.dumps(summarize(result))
        for value in full_secrets.values():
            assert value not in result["template"].text
            assert value not in summary_text

    def test_summary_fields(self, options, base_secrets):
        summary = summarize(build_user_data(options, base_secrets))
        assert summary["hostname"] == "prod-scout"
        assert summary["backend"] == "hetzner"
        assert summary["ceiling_bytes"] == 32768
        assert summary["payload_bytes"] <= summary["ceiling_bytes"]
        assert summary["secret_names"] == ["ANTHROPIC_API_KEY", "TAILSCALE_AUTH_KEY", "GATEWAY_TOKEN"]
        assert summary["server_labels"]["Name"] == "scout-server"

    def test_gateway_token_derived_when_missing(self, options, base_secrets):
        del base_secrets["GATEWAY_TOKEN"]
        script = decompress(build_user_data(options, base_secrets)["payload"])
        assert re.search(r"\nGATEWAY_TOKEN='[0-9a-f]{48}'\n", script)

    def test_supplied_gateway_token_kept(self, base_secrets):
        assert with_gateway_token(base_secrets)["GATEWAY_TOKEN"] == base_secrets["GATEWAY_TOKEN"]

    def test_accepts_secret_binding(self, options, base_secrets):
        binding = SecretBinding.from_mapping(base_secrets)
        result = build_user_data(options, binding)
        assert decompress(result["payload"]) == decompress(build_user_data(options, base_secrets)["payload"])

    def test_plugin_secrets_end_to_end(self, plugin_options, base_secrets, plugin_secrets):
        result = build_user_data(plugin_options, {**base_secrets, **plugin_secrets})
        script = decompress(result["payload"])
        for name, value in plugin_secrets.items():
            assert f"\n{name}='{value}'\n" in script

    def test_encoding_passed_through(self, options, base_secrets):
        payload = build_user_data(options, base_secrets, encoding=GZIP_BASE64)["payload"]
        assert payload.encoding == GZIP_BASE64
        assert not payload.text.startswith("#!")

    def test_oversized_for_aws(self, base_secrets):
        """Test that noisy workspace files push an aws payload over 16KB."""
        noise = base64.b64encode(random.Random(7).randbytes(15000)).decode()
        options = {"name": "scout", "backend": "aws", "workspace_files": {"noise.txt": noise}}
        with pytest.raises(PayloadTooLargeError) as exc_info:
            build_user_data(options, base_secrets)
        assert exc_info.value.ceiling_bytes == 16384

    def test_strict_rejects_unused_secret(self, options, base_secrets):
        with pytest.raises(UnusedBindingError) as exc_info:
            build_user_data({**options, "skip_tailscale": True}, base_secrets, strict=True)
        assert exc_info.value.names == ["TAILSCALE_AUTH_KEY"]

    def test_logs_hold_no_values(self, options, full_secrets, caplog):
        del full_secrets["GATEWAY_TOKEN"]
        with caplog.at_level(logging.DEBUG):
            build_user_data(options, full_secrets)
        assert "prod-scout" in caplog.text
        for value in full_secrets.values():
            assert value not in caplog.text
