"""Tests for the nginx provider and its config patcher."""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from serman.errors import CommandFailedError, ConfigParseError, PermissionDeniedError
from serman.models import PORT_UNSET, AppRecord
from serman.providers.nginx import (
    END_MARKER,
    START_MARKER,
    HttpBlock,
    NginxError,
    NginxProvider,
    SentinelRegion,
    Unrecognized,
    classify,
    find_http_block,
)
from serman.runner import CommandRunner
from serman.templates import TemplateEngine

if TYPE_CHECKING:
    from conftest import CommandRecorder

BLOG = AppRecord(name="blog", port=3000, domains=["blog.io", "www.blog.io"])
SHOP = AppRecord(name="shop", port=PORT_UNSET, domains=["shop.io"])

HTTP_ONLY = (
    "user www-data;\n"
    "events {\n"
    "    worker_connections 768;\n"
    "}\n"
    "\n"
    "http {\n"
    "    sendfile on;\n"
    "}\n"
)


def test_classify_detects_the_three_layouts() -> None:
    """Sentinels win, then a top-level http block, then nothing usable."""
    with_region = f"http {{\n    {START_MARKER}\n    {END_MARKER}\n}}\n"

    assert classify(with_region) == SentinelRegion(start=1, end=2)
    assert isinstance(classify(HTTP_ONLY), HttpBlock)
    assert isinstance(classify(""), Unrecognized)
    assert isinstance(classify("events {\n}\n"), Unrecognized)
    assert isinstance(classify("http {\n    sendfile on;\n"), Unrecognized)


def test_find_http_block_ignores_comments_and_strings() -> None:
    """Braces and keywords inside comments or quotes do not count."""
    content = (
        "# http { fake\n"
        "events { }\n"
        "http {\n"
        "    # } not a close\n"
        '    log_format main "{ $remote_addr }";\n'
        "}\n"
    )

    open_offset, close_offset = find_http_block(content)

    assert content[open_offset] == "{"
    assert content[close_offset] == "}"
    assert content[:open_offset].endswith("http ")
    assert close_offset == len(content) - 2


def test_find_http_block_rejects_unbalanced_braces() -> None:
    """A stray closing brace is a parse error."""
    with pytest.raises(ConfigParseError):
        find_http_block("}\nhttp {\n}\n")


def test_server_block_proxies_active_apps(nginx_provider: NginxProvider) -> None:
    """Active apps proxy every domain to localhost:<port>."""
    block = nginx_provider.server_block(BLOG)

    assert "server_name blog.io www.blog.io;" in block
    assert "proxy_pass http://localhost:3000;" in block
    assert "return 503;" not in block


def test_server_block_answers_503_without_a_port(nginx_provider: NginxProvider) -> None:
    """Apps that are unset or stopped answer 503."""
    block = nginx_provider.server_block(SHOP)

    assert "server_name shop.io;" in block
    assert "return 503;" in block
    assert "proxy_pass" not in block
    assert nginx_provider.server_block(AppRecord(name="bare", port=4000)) == ""


def test_server_block_uses_config_override_verbatim(nginx_provider: NginxProvider) -> None:
    """A raw override replaces the generated block."""
    override = "server {\n    listen 8080;\n}\n"
    record = AppRecord(name="custom", port=5000, domains=["c.io"], config=override)

    assert nginx_provider.server_block(record) == "server {\n    listen 8080;\n}"


def test_merge_inserts_region_before_http_close(nginx_provider: NginxProvider) -> None:
    """Without sentinels the region is appended inside the http block."""
    merged = nginx_provider.merge(HTTP_ONLY, [BLOG])

    assert merged.startswith(HTTP_ONLY[: HTTP_ONLY.rindex("}")])
    assert f"\n    {START_MARKER}\n    server {{\n" in merged
    assert merged.endswith(f"    }}\n    {END_MARKER}\n}}\n")
    assert "\n            proxy_pass http://localhost:3000;\n" in merged


def test_merge_inserts_when_http_closes_on_a_content_line(nginx_provider: NginxProvider) -> None:
    """A closing brace sharing its line with directives still gets the region."""
    merged = nginx_provider.merge("http { sendfile on; }\n", [])

    assert merged == f"http {{ sendfile on; \n    {START_MARKER}\n    {END_MARKER}\n}}\n"


def test_merge_replaces_only_the_region(nginx_provider: NginxProvider) -> None:
    """Bytes outside the sentinel pair are preserved exactly."""
    before = "# operator header\nhttp {\n\tgzip on;\n"
    after = "\tinclude /etc/nginx/sites-enabled/*;\n}\n# trailer\n"
    content = f"{before}\t{START_MARKER}\n\told content\n\t{END_MARKER}\n{after}"

    merged = nginx_provider.merge(content, [SHOP])

    assert merged.startswith(before + f"\t{START_MARKER}\n")
    assert merged.endswith(f"\t{END_MARKER}\n{after}")
    assert "old content" not in merged
    assert "\tserver {\n" in merged


def test_merge_is_idempotent_for_every_layout(nginx_provider: NginxProvider) -> None:
    """Merging a merged file again changes nothing."""
    for content in (HTTP_ONLY, "", "garbage without braces"):
        once = nginx_provider.merge(content, [BLOG, SHOP])
        assert nginx_provider.merge(once, [BLOG, SHOP]) == once
        assert once.count(START_MARKER) == 1
        assert once.count(END_MARKER) == 1


def test_merge_drops_stray_markers(nginx_provider: NginxProvider) -> None:
    """A lone start marker is discarded before inserting a fresh region."""
    content = HTTP_ONLY.replace("    sendfile on;\n", f"    sendfile on;\n    {START_MARKER}\n")

    merged = nginx_provider.merge(content, [BLOG])

    assert merged.count(START_MARKER) == 1
    assert merged.count(END_MARKER) == 1


def test_merge_synthesizes_skeleton_for_unrecognized_files(
    nginx_provider: NginxProvider,
) -> None:
    """Files without an http block are replaced by a minimal skeleton."""
    merged = nginx_provider.merge("", [BLOG])

    assert "events {" in merged
    assert f"http {{\n    {START_MARKER}\n" in merged
    assert merged.endswith(f"    {END_MARKER}\n}}\n")


def test_region_keeps_registry_order(nginx_provider: NginxProvider) -> None:
    """Server blocks appear in registry order."""
    region = nginx_provider.render_region([SHOP, BLOG])

    assert region.index("shop.io") < region.index("blog.io")


def test_apply_stages_copies_and_reloads(
    nginx_provider: NginxProvider,
    nginx_conf: Path,
    commands: CommandRecorder,
) -> None:
    """apply writes the staging file, copies it into place and reloads nginx."""
    result = nginx_provider.apply([BLOG])

    staging = nginx_provider.staging_file
    assert result.layout == "HttpBlock"
    assert result.changed is True
    assert staging.read_text(encoding="utf-8") == nginx_conf.read_text(encoding="utf-8")
    assert commands.names() == [
        f"cp {staging} {nginx_conf}",
        "systemctl restart nginx",
    ]

    second = nginx_provider.apply([BLOG])

    assert second.layout == "SentinelRegion"
    assert second.changed is False


def test_apply_creates_missing_config(tmp_path: Path, commands: CommandRecorder) -> None:
    """A missing nginx.conf is created and filled with the skeleton."""
    config_file = tmp_path / "etc" / "nginx.conf"
    provider = NginxProvider(
        templates=TemplateEngine.with_overrides(None),
        runner=CommandRunner(timeout=5.0),
        config_file=config_file,
        staging_file=tmp_path / "staging.conf",
        reload_backoff=0.0,
    )

    result = provider.apply([])

    assert result.layout == "Unrecognized"
    assert START_MARKER in config_file.read_text(encoding="utf-8")


def test_apply_refuses_unwritable_config(
    nginx_provider: NginxProvider,
    monkeypatch: pytest.MonkeyPatch,
    commands: CommandRecorder,
) -> None:
    """An unwritable nginx.conf raises PermissionDeniedError before any command."""
    monkeypatch.setattr("serman.providers.nginx.os.access", lambda *args, **kwargs: False)

    with pytest.raises(PermissionDeniedError, match="sudo chown"):
        nginx_provider.apply([BLOG])

    assert commands.calls == []


def test_apply_reload_failure_keeps_staging_file(
    nginx_provider: NginxProvider,
    commands: CommandRecorder,
) -> None:
    """A failing reload propagates after the staging file was written."""
    commands.fail("systemctl", "restart", "nginx", times=2)

    with pytest.raises(CommandFailedError):
        nginx_provider.apply([BLOG])

    assert START_MARKER in nginx_provider.staging_file.read_text(encoding="utf-8")


def test_merge_replaces_markers_sharing_one_line(nginx_provider: NginxProvider) -> None:
    """An empty region written on a single line is replaced, not duplicated."""
    content = f"http {{\n    {START_MARKER} {END_MARKER}\n}}\n"

    assert classify(content) == SentinelRegion(start=1, end=1)

    merged = nginx_provider.merge(content, [BLOG])

    assert merged.count(START_MARKER) == 1
    assert merged.count(END_MARKER) == 1
    assert merged.startswith(f"http {{\n    {START_MARKER}\n")
    assert merged.endswith(f"    {END_MARKER}\n}}\n")
    assert nginx_provider.merge(merged, [BLOG]) == merged


def test_apply_rejects_undecodable_config(
    nginx_provider: NginxProvider,
    nginx_conf: Path,
    commands: CommandRecorder,
) -> None:
    """An nginx.conf that is not UTF-8 raises NginxError before any command."""
    nginx_conf.write_bytes(b"http {\n    # caf\xe9\n}\n")

    with pytest.raises(NginxError, match="Failed to read nginx config"):
        nginx_provider.apply([BLOG])

    assert commands.calls == []


def test_apply_reports_unwritable_staging_file(
    tmp_path: Path,
    nginx_conf: Path,
    commands: CommandRecorder,
) -> None:
    """A staging path that cannot be created raises NginxError."""
    blocker = tmp_path / "blocker"
    blocker.write_text("file", encoding="utf-8")
    provider = NginxProvider(
        templates=TemplateEngine.with_overrides(None),
        runner=CommandRunner(timeout=5.0),
        config_file=nginx_conf,
        staging_file=blocker / "state" / "nginx.conf",
        reload_backoff=0.0,
    )

    with pytest.raises(NginxError, match="Failed to write nginx staging file"):
        provider.apply([BLOG])

    assert commands.calls == []
