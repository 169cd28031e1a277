"""
Tests for micmac.py. invoke() runs real child processes (the current Python
interpreter); exiv2 is replaced by a small script printing "exiv2 pr" output.
"""
import os
import stat
import sys

import pytest

import micmac

EXIV2_OUTPUT = """\
File name       : /data/set/DSC_6443.jpg
File size       : 5432112 Bytes
MIME type       : image/jpeg
Image size      : 6000 x 4000
Camera make     : NIKON CORPORATION
Exposure time   : 1/500 s
"""


def python_cmd(code):
    return [sys.executable, "-c", code]


def make_executable(path, body):
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


# ---------------------------------------------------------------------------
# invoke()
# ---------------------------------------------------------------------------

def test_invoke_streams_lines_in_order():
    lines = []
    code = "import sys\nprint('one')\nprint('two', file=sys.stderr)\nprint('three')"
    assert micmac.invoke(python_cmd(code), on_line=lines.append) == 0
    assert lines == ["one", "two", "three"]


def test_invoke_returns_exit_code():
    assert micmac.invoke(python_cmd("import sys; sys.exit(3)")) == 3


def test_invoke_timeout_kills_child():
    lines = []
    code = "import time\nprint('started', flush=True)\ntime.sleep(30)"
    with pytest.raises(micmac.ExternalToolTimeout, match="did not finish"):
        micmac.invoke(python_cmd(code), on_line=lines.append, timeout=1.0)
    assert lines == ["started"]


def test_invoke_timeout_closes_pipe(monkeypatch):
    started = []
    real_popen = micmac.subprocess.Popen

    def recording_popen(*args, **kwargs):
        process = real_popen(*args, **kwargs)
        started.append(process)
        return process

    monkeypatch.setattr(micmac.subprocess, "Popen", recording_popen)
    with pytest.raises(micmac.ExternalToolTimeout):
        micmac.invoke(python_cmd("import time; time.sleep(30)"), timeout=0.5)
    assert started[0].stdout.closed
    assert started[0].returncode is not None


def test_invoke_missing_program(tmp_path):
    with pytest.raises(micmac.ExternalToolFailed, match="Cannot launch"):
        micmac.invoke([str(tmp_path / "no-such-tool")])


def test_invoke_survives_undecodable_output():
    lines = []
    code = r"import sys; sys.stdout.buffer.write(b'Copyright : \xa9 Jos\xe9\nImage size : 10 x 20\n')"
    assert micmac.invoke(python_cmd(code), on_line=lines.append, timeout=10) == 0
    assert len(lines) == 2
    assert "\ufffd" in lines[0]
    assert lines[1] == "Image size : 10 x 20"


# ---------------------------------------------------------------------------
# exiv2 output parsing
# ---------------------------------------------------------------------------

def test_parse_metadata():
    fields = micmac.parse_metadata(EXIV2_OUTPUT.splitlines())
    assert fields == {"filename": "DSC_6443.jpg", "width": 6000, "height": 4000}


def test_parse_metadata_keys_ignore_case_and_spaces():
    fields = micmac.parse_metadata(["IMAGE SIZE:12x34", "FileName : a/b/c.tif"])
    assert fields == {"filename": "c.tif", "width": 12, "height": 34}


def test_parse_metadata_ignores_unusable_lines():
    fields = micmac.parse_metadata(["no colon here", "Image size : unknown", "Exposure time : 1/500 s"])
    assert fields == {}


@pytest.mark.skipif(os.name == "nt", reason="uses a shell script as fake exiv2")
def test_read_metadata_with_fake_exiv2(tmp_path):
    image = tmp_path / "DSC_6443.jpg"
    image.write_bytes(b"jpeg")
    tool = make_executable(tmp_path / "exiv2", f"cat <<'EOF'\n{EXIV2_OUTPUT}EOF\n")

    meta = micmac.read_metadata(str(tool), image, timeout=10)
    assert meta == micmac.ImageMetadata("DSC_6443.jpg", 6000, 4000)


@pytest.mark.skipif(os.name == "nt", reason="uses a shell script as fake exiv2")
def test_read_metadata_without_size(tmp_path):
    image = tmp_path / "a.jpg"
    image.write_bytes(b"jpeg")
    tool = make_executable(tmp_path / "exiv2", "echo 'a.jpg: No Exif data found in the file' >&2\nexit 253\n")
    with pytest.raises(micmac.ImageUnreadable, match="no image size"):
        micmac.read_metadata(str(tool), image)


@pytest.mark.skipif(os.name == "nt", reason="uses a shell script as fake exiv2")
def test_read_metadata_with_latin1_exif_fields(tmp_path):
    image = tmp_path / "a.jpg"
    image.write_bytes(b"jpeg")
    tool = make_executable(
        tmp_path / "exiv2",
        "printf 'Copyright       : \\251 Jos\\351\\n'\n"
        "printf 'Image size      : 10 x 20\\n'\n",
    )
    meta = micmac.read_metadata(str(tool), image, timeout=10)
    assert meta == micmac.ImageMetadata("a.jpg", 10, 20)


def test_read_metadata_rejects_non_regular_file(tmp_path):
    with pytest.raises(micmac.ImageUnreadable):
        micmac.read_metadata("exiv2", tmp_path)
    with pytest.raises(micmac.ImageUnreadable):
        micmac.read_metadata("exiv2", tmp_path / "missing.jpg")


# ---------------------------------------------------------------------------
# Tool location + XYZ2Im
# ---------------------------------------------------------------------------

@pytest.mark.skipif(os.name == "nt", reason="relies on POSIX executable bits")
def test_find_metadata_tool_in_binaire_aux(tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", "")
    bin_dir = tmp_path / "micmac" / "bin"
    bin_dir.mkdir(parents=True)
    aux = tmp_path / "micmac" / "binaire-aux" / micmac.AUX_PLATFORM_DIR
    aux.mkdir(parents=True)
    tool = make_executable(aux / "exiv2", "exit 0\n")

    assert micmac.find_metadata_tool(bin_dir) == str(tool)


def test_find_metadata_tool_unavailable(tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", "")
    with pytest.raises(micmac.MetadataToolUnavailable, match="exiv2"):
        micmac.find_metadata_tool(tmp_path)


@pytest.mark.skipif(os.name == "nt", reason="relies on POSIX executable bits")
def test_find_solver(tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", "")
    assert micmac.find_solver(tmp_path) == "mm3d"
    (tmp_path / "bin").mkdir()
    solver = make_executable(tmp_path / "bin" / "mm3d", "exit 0\n")
    assert micmac.find_solver(tmp_path) == str(solver)


@pytest.mark.skipif(os.name == "nt", reason="uses a shell script as fake mm3d")
def test_run_xyz2im_passes_arguments_and_checks_exit(tmp_path):
    solver = make_executable(tmp_path / "mm3d", 'echo "$@"\nprintf "1 2\\n3 4\\n" > "$4"\n')
    out = tmp_path / "DSC_01-GCP.jpg.txt"
    lines = []

    micmac.run_xyz2im(str(solver), "Ori-X/Orientation-DSC_01.jpg.xml", "GCP-Coordinates.txt",
                      out, timeout=10, on_line=lines.append)
    assert lines == [f"XYZ2Im Ori-X/Orientation-DSC_01.jpg.xml GCP-Coordinates.txt {out}"]
    assert out.read_text() == "1 2\n3 4\n"

    failing = make_executable(tmp_path / "mm3d-fail", "exit 1\n")
    with pytest.raises(micmac.ExternalToolFailed, match="exited with code 1"):
        micmac.run_xyz2im(str(failing), "o.xml", "c.txt", out)
