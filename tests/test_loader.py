"""Tests for reading stagecraft.toml build descriptions."""

from pathlib import Path

import pytest

from stagecraft.exceptions import BuildFileError, UnknownBaseError
from stagecraft.loader import load_build_file, parse_stage
from stagecraft.models import BuildArg, CopyOperation, ExternalDependency

SAMPLE = """
[build]
terminal = "tools"
output = "out"
workers = 2
source_date_epoch = 1700000000

[package]
version = "1.2.3"
maintainer = "Build Team <build@example.com>"
Section = "devel"

[[stage]]
name = "tools-env"
base = "image:ubuntu:22.04"
args = ["TOOLS_VERSION=0.20.0", { name = "ARCH", default = "riscv64" }]
env = { DEBIAN_FRONTEND = "noninteractive" }
commands = ["mkdir -p opt"]
fetches = [
  { url = "https://example.com/tools-${TOOLS_VERSION}.deb", digest = "sha256:${TOOLS_SHA}", destination = "/tmp/" },
]
outputs = ["/opt"]

[[stage]]
name = "tools"
base = "tools-env"
copies = [{ from = "tools-env", src = "/opt", dst = "/staging/opt" }]
outputs = ["/staging"]
"""


def write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "stagecraft.toml"
    path.write_text(text)
    return path


def test_load_build_file(tmp_path: Path) -> None:
    loaded = load_build_file(write(tmp_path, SAMPLE), environ={})

    assert loaded.graph.names == ["tools-env", "tools"]
    assert loaded.terminal == "tools"
    assert loaded.output == tmp_path / "out"
    assert loaded.context_dir == tmp_path
    assert loaded.settings.workers == 2
    assert loaded.settings.source_date_epoch == 1700000000

    env_stage = loaded.graph["tools-env"]
    assert env_stage.args == (BuildArg("TOOLS_VERSION", "0.20.0"), BuildArg("ARCH", "riscv64"))
    assert dict(env_stage.env) == {"DEBIAN_FRONTEND": "noninteractive"}
    assert env_stage.fetches[0].destination == "/tmp/"
    assert loaded.graph["tools"].copies == (CopyOperation("tools-env", "/opt", "/staging/opt"),)

    assert loaded.manifest is not None
    assert loaded.manifest.version == "1.2.3"
    assert dict(loaded.manifest.extra_fields) == {"Section": "devel"}


def test_terminal_defaults_to_last_stage(tmp_path: Path) -> None:
    loaded = load_build_file(
        write(tmp_path, '[[stage]]\nname = "a"\n\n[[stage]]\nname = "b"\nbase = "a"\n'),
        environ={},
    )
    assert loaded.terminal == "b"
    assert loaded.manifest is None
    assert loaded.output == tmp_path / "dist"


def test_forward_reference_is_rejected(tmp_path: Path) -> None:
    text = '[[stage]]\nname = "a"\nbase = "b"\n\n[[stage]]\nname = "b"\n'
    with pytest.raises(UnknownBaseError):
        load_build_file(write(tmp_path, text), environ={})


@pytest.mark.parametrize(
    ("text", "match"),
    [
        ("", "no \\[\\[stage\\]\\]"),
        ("[[stage]\n", "Invalid TOML"),
        ('[[stage]]\nbase = "scratch"\n', "'name'"),
        ('[[stage]]\nname = "a"\nrun = ["x"]\n', "unknown keys"),
        ('[[stage]]\nname = "a"\ncommands = "make"\n', "list of strings"),
        ('[[stage]]\nname = "a"\ncopies = ["x"]\n', "must be tables"),
    ],
)
def test_malformed_build_files(tmp_path: Path, text: str, match: str) -> None:
    with pytest.raises(BuildFileError, match=match):
        load_build_file(write(tmp_path, text), environ={})


def test_missing_build_file(tmp_path: Path) -> None:
    with pytest.raises(BuildFileError, match="not found"):
        load_build_file(tmp_path / "nope.toml")


def test_parse_stage_validates_literal_digests() -> None:
    table = {
        "name": "fetcher",
        "fetches": [{"url": "https://example.com/x", "digest": "sha256:xyz", "destination": "/x"}],
    }
    with pytest.raises(BuildFileError, match="fetcher"):
        parse_stage(table, 0)

    table["fetches"][0]["digest"] = "sha256:" + "ab" * 32
    stage = parse_stage(table, 0)
    assert stage.fetches == (ExternalDependency("https://example.com/x", "sha256:" + "ab" * 32, "/x"),)
