import subprocess
from pathlib import Path

from atoll.bundler import EsbuildBundler, collect_outputs, find_executable
from atoll.protocols import Bundler


def test_find_executable_prefers_path_then_node_modules(monkeypatch, tmp_path):
    monkeypatch.setattr("atoll.bundler.shutil.which", lambda name: None)
    assert find_executable("esbuild", tmp_path) is None

    local = tmp_path / "node_modules" / ".bin" / "esbuild"
    local.parent.mkdir(parents=True)
    local.write_text("")
    assert find_executable("esbuild", tmp_path) == str(local)

    monkeypatch.setattr("atoll.bundler.shutil.which", lambda name: "/usr/bin/esbuild")
    assert find_executable("esbuild", tmp_path) == "/usr/bin/esbuild"


def test_command_flags(tmp_path):
    bundler = EsbuildBundler(tmp_path, executable="esbuild")
    cmd = bundler.command(
        "esbuild",
        tmp_path / "entry.js",
        tmp_path / "out",
        entry_name="counter",
        minify=True,
        externals=["react", "react-dom/client"],
        define={"process.env.NODE_ENV": '"development"'},
    )
    assert cmd[:2] == ["esbuild", str(tmp_path / "entry.js")]
    for flag in ("--bundle", "--format=esm", "--platform=browser", "--jsx=automatic", "--minify"):
        assert flag in cmd
    assert f"--outdir={tmp_path / 'out'}" in cmd
    assert "--entry-names=counter" in cmd
    assert "--external:react" in cmd
    assert "--external:react-dom/client" in cmd
    assert '--define:process.env.NODE_ENV="development"' in cmd


def test_missing_executable_is_unsuccessful(monkeypatch, tmp_path):
    monkeypatch.setattr("atoll.bundler.find_executable", lambda name, root=None: None)
    result = EsbuildBundler(tmp_path).build(tmp_path / "entry.js", tmp_path / "out")
    assert not result.success
    assert "npm install" in result.logs


def test_build_collects_outputs(monkeypatch, tmp_path):
    outdir = tmp_path / "out"

    def fake_run(cmd, capture_output, text, cwd):
        (outdir / "entry.js").write_text("console.log(1)")
        (outdir / "entry.css").write_text(".a{}")
        (outdir / "entry.js.map").write_text("{}")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="▲ [WARNING] careful")

    monkeypatch.setattr("atoll.bundler.subprocess.run", fake_run)
    result = EsbuildBundler(tmp_path, executable="esbuild").build(tmp_path / "entry.js", outdir)

    assert result.success
    assert result.output("js").text == "console.log(1)"
    assert result.output("css").text == ".a{}"
    assert len(result.outputs) == 2
    assert "careful" in result.logs


def test_build_failure_returns_logs(monkeypatch, tmp_path):
    monkeypatch.setattr(
        "atoll.bundler.subprocess.run",
        lambda cmd, capture_output, text, cwd: subprocess.CompletedProcess(
            cmd, 1, stdout="", stderr='✘ [ERROR] Could not resolve "nope"'
        ),
    )
    result = EsbuildBundler(tmp_path, executable="esbuild").build(
        tmp_path / "entry.js", tmp_path / "out"
    )
    assert not result.success
    assert result.outputs == []
    assert "Could not resolve" in result.logs


def test_collect_outputs_filters_by_stem(tmp_path):
    (tmp_path / "a.js").write_text("a")
    (tmp_path / "b.js").write_text("b")
    assert [o.path.name for o in collect_outputs(tmp_path, "a")] == ["a.js"]


def test_esbuild_bundler_satisfies_protocol():
    assert isinstance(EsbuildBundler(Path(".")), Bundler)
