#!/usr/bin/env python3
"""
Thin wrappers around the external MicMac tools used by gcp2imgs.py.

  invoke()               Run a program, stream its output lines to a callback.
  find_solver()          Locate mm3d.
  find_metadata_tool()   Locate exiv2 (shipped under MicMac's binaire-aux).
  run_xyz2im()           mm3d XYZ2Im: ground coordinates -> image coordinates.
  read_metadata()        exiv2 pr: file name and pixel size of one image.
"""

import os
import queue
import shutil
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, List, NamedTuple, Optional

SOLVER_NAME = 'mm3d'
METADATA_TOOL_NAME = 'exiv2'
AUX_PLATFORM_DIR = {'win32': 'windows', 'darwin': 'macos'}.get(sys.platform, 'linux')

_EOF = object()


class ToolError(RuntimeError):
    """Base class for failures of an external tool."""


class ExternalToolFailed(ToolError):
    pass


class ExternalToolTimeout(ToolError):
    pass


class MetadataToolUnavailable(ToolError):
    pass


class ImageUnreadable(ToolError):
    pass


class ImageMetadata(NamedTuple):
    filename: str
    width: int
    height: int


# ---------------------------------------------------------------------------
# Process invocation
# ---------------------------------------------------------------------------

def invoke(cmd: List[str],
           on_line: Optional[Callable[[str], None]] = None,
           timeout: Optional[float] = None,
           cwd: Optional[str] = None) -> int:
    """
    Run cmd and block until it exits, returning its exit code.

    stdout and stderr are merged. Each output line (without its newline) is
    passed to on_line on the calling thread, in the order the child wrote
    them. A reader thread drains the pipe so the timeout also covers a child
    that hangs without printing anything.

    Raises ExternalToolFailed if the program cannot be launched and
    ExternalToolTimeout (after killing the child) if timeout seconds elapse.
    """
    try:
        process = subprocess.Popen(
            [str(c) for c in cmd],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding='utf-8',
            errors='replace',
            bufsize=1,
            cwd=cwd,
            env={**os.environ, "PYTHONUNBUFFERED": "1"}
        )
    except OSError as e:
        raise ExternalToolFailed(f"Cannot launch {cmd[0]}: {e}") from e

    lines = queue.Queue()

    def pump():
        try:
            for line in process.stdout:
                lines.put(line)
        finally:
            lines.put(_EOF)

    reader = threading.Thread(target=pump, daemon=True)
    reader.start()

    deadline = None if timeout is None else time.monotonic() + timeout

    def remaining():
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())

    def give_up():
        process.kill()
        process.wait()
        reader.join(timeout=1.0)
        process.stdout.close()
        raise ExternalToolTimeout(
            f"{Path(str(cmd[0])).name} did not finish within {timeout:g}s: {' '.join(map(str, cmd))}"
        )

    while True:
        try:
            line = lines.get(timeout=remaining())
        except queue.Empty:
            give_up()
        if line is _EOF:
            break
        if on_line is not None:
            on_line(line.rstrip('\r\n'))

    try:
        returncode = process.wait(timeout=remaining())
    except subprocess.TimeoutExpired:
        give_up()
    reader.join()
    process.stdout.close()
    return returncode


# ---------------------------------------------------------------------------
# Tool location
# ---------------------------------------------------------------------------

def _search_path(dirs: Iterable[Path]) -> str:
    entries = [str(d) for d in dirs]
    if os.environ.get('PATH'):
        entries.append(os.environ['PATH'])
    return os.pathsep.join(entries)


def find_solver(init_path) -> str:
    """Return the mm3d executable: init_path, init_path/bin, PATH, else the bare name."""
    init_path = Path(init_path)
    found = shutil.which(SOLVER_NAME, path=_search_path([init_path, init_path / 'bin']))
    return found or SOLVER_NAME


def find_metadata_tool(init_path) -> str:
    """
    Return the exiv2 executable.

    MicMac ships it next to its bin directory under binaire-aux/<platform>,
    so both init_path/.. and init_path are tried before PATH.
    """
    init_path = Path(init_path)
    candidates = [
        init_path.parent / 'binaire-aux' / AUX_PLATFORM_DIR,
        init_path / 'binaire-aux' / AUX_PLATFORM_DIR,
    ]
    found = shutil.which(METADATA_TOOL_NAME, path=_search_path(candidates))
    if not found:
        searched = ', '.join(str(c) for c in candidates)
        raise MetadataToolUnavailable(
            f"Cannot find {METADATA_TOOL_NAME} (searched {searched} and PATH)"
        )
    return found


# ---------------------------------------------------------------------------
# mm3d XYZ2Im
# ---------------------------------------------------------------------------

def run_xyz2im(solver: str,
               orientation_file,
               coordinates_file,
               output_file,
               timeout: Optional[float] = None,
               on_line: Optional[Callable[[str], None]] = None) -> None:
    """
    Project the ground points in coordinates_file into the image described by
    orientation_file; mm3d writes one "x y" line per point to output_file.

    Raises ExternalToolFailed on a non-zero exit code.
    """
    cmd = [solver, 'XYZ2Im', str(orientation_file), str(coordinates_file), str(output_file)]
    returncode = invoke(cmd, on_line=on_line, timeout=timeout)
    if returncode != 0:
        raise ExternalToolFailed(f"mm3d XYZ2Im exited with code {returncode} for {orientation_file}")


# ---------------------------------------------------------------------------
# exiv2 pr
# ---------------------------------------------------------------------------

def _extract_filename(value: str, fields: dict) -> None:
    fields['filename'] = Path(value.strip()).name.replace('\n', '')


def _extract_image_size(value: str, fields: dict) -> None:
    # "6000 x 4000" -> (6000, 4000)
    size = value.replace(' ', '')
    width, sep, height = size.partition('x')
    if not sep:
        return
    try:
        fields['width'] = int(width)
        fields['height'] = int(height)
    except ValueError:
        return


_EXTRACTORS = {
    'filename':  _extract_filename,
    'imagesize': _extract_image_size,
}


def parse_metadata_line(line: str, fields: dict) -> None:
    """Update fields from one "Key : value" line of exiv2 output."""
    key, colon, value = line.partition(':')
    if not colon:
        return
    extractor = _EXTRACTORS.get(key.replace(' ', '').lower())
    if extractor is not None:
        extractor(value, fields)


def parse_metadata(lines: Iterable[str]) -> dict:
    fields = {}
    for line in lines:
        parse_metadata_line(line, fields)
    return fields


def read_metadata(tool: str, image_path, timeout: Optional[float] = None) -> ImageMetadata:
    """
    Run "exiv2 pr" on image_path and return its file name and pixel size.

    Raises ImageUnreadable if image_path is not a regular file or exiv2 did
    not report an image size.
    """
    image_path = Path(image_path)
    if not image_path.is_file():
        raise ImageUnreadable(f"Not a regular file: {image_path}")

    fields = {}
    invoke([tool, 'pr', str(image_path)],
           on_line=lambda line: parse_metadata_line(line, fields),
           timeout=timeout)

    if 'width' not in fields or 'height' not in fields:
        raise ImageUnreadable(f"{METADATA_TOOL_NAME} reported no image size for {image_path}")
    return ImageMetadata(
        filename=fields.get('filename', image_path.name),
        width=fields['width'],
        height=fields['height'],
    )
