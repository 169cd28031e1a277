#!/usr/bin/env python3
"""
GCP -> images association for MicMac datasets.

For every image selected by a directory + filename pattern, project all ground
control points with "mm3d XYZ2Im", keep the projections that fall inside the
image and write, per GCP, the images it is visible in.

Stages:
  load_catalog()          Parse the DicoAppuisFlottant GCP file.
  select_images()         Filter the dataset directory by a glob (or regex).
  build_associations()    Project, measure and bound-check every image.
  compress()              Compact "IMG_000(1|2).jpg" alternation of names.
  write_results()         One <GCP>-GCP2IMGS.txt per GCP.
  run_pipeline()          All of the above for one RunConfig.

Usage:
  python gcp2imgs.py "/data/set/DSC_*.jpg" Ori-Init GCP.xml [options] [Out=... Pattern=... InitPath=...]
"""

import argparse
import fnmatch
import os
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from lxml import etree

import micmac

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CATALOG_ROOT = 'DicoAppuisFlottant'
CATALOG_RECORD = 'OneAppuisDAF'
COORDINATES_FILE_NAME = 'GCP-Coordinates.txt'
ORI_DIR_PREFIX = 'Ori-'
ORIENTATION_PREFIX = 'Orientation-'
PROJECTION_POSTFIX = '-GCP'
RESULT_SUFFIX = '-GCP2IMGS.txt'
DEFAULT_OUT_DIR = 'GCP-IMG'
DEFAULT_TIMEOUT = 600.0


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class PipelineError(Exception):
    """Base class for gcp2imgs failures."""


class MissingInput(PipelineError):
    pass


class MalformedCatalog(PipelineError, ValueError):
    pass


class CoordinatesExportFailed(PipelineError):
    pass


class NoMatchingImages(PipelineError):
    pass


class OrientationFileMissing(PipelineError):
    pass


class ProjectionMissing(PipelineError):
    pass


class ProjectionCountMismatch(PipelineError):
    pass


class EmptyAssociation(PipelineError):
    pass


class OutputDirUnavailable(PipelineError):
    pass


class OutputWriteFailed(PipelineError):
    pass


# ---------------------------------------------------------------------------
# Data model + configuration
# ---------------------------------------------------------------------------

class GcpPoint(NamedTuple):
    name: str
    x: float
    y: float
    z: float


class ProjectedCoordinate(NamedTuple):
    x: float
    y: float


@dataclass(frozen=True)
class RunConfig:
    """Every option of one run; built once by main() and passed down."""
    image_pattern: str
    orientation: str
    gcp_file: str
    out_dir: str = DEFAULT_OUT_DIR
    pattern: bool = True
    init_path: str = field(default_factory=os.getcwd)
    regex: bool = False
    timeout: Optional[float] = DEFAULT_TIMEOUT
    quiet: bool = False

    @property
    def dataset_root(self) -> Path:
        return Path(self.image_pattern).parent

    @property
    def orientation_dir(self) -> Path:
        name = self.orientation
        if not name.startswith(ORI_DIR_PREFIX):
            name = ORI_DIR_PREFIX + name
        return self.dataset_root / name

    @property
    def gcp_path(self) -> Path:
        return self.dataset_root / self.gcp_file

    @property
    def output_dir(self) -> Path:
        return self.dataset_root / self.out_dir

    @property
    def coordinates_file(self) -> Path:
        return self.dataset_root / COORDINATES_FILE_NAME


# ---------------------------------------------------------------------------
# GCP catalog
# ---------------------------------------------------------------------------

_LEADING_NUMBER = re.compile(r'\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?')


def _atof(text: str) -> float:
    """Lenient float conversion of the leading number: "30 1" -> 30, "abc" -> 0."""
    match = _LEADING_NUMBER.match(text)
    if match is None:
        return 0.0
    return float(match.group(0))


def load_catalog(path) -> List[GcpPoint]:
    """
    Parse a MicMac GCP file and return its points in document order.

        <DicoAppuisFlottant>
          <OneAppuisDAF>
            <Pt>x y z</Pt>
            <NamePt>name</NamePt>
          </OneAppuisDAF>
          ...

    Strict: the first malformed record raises MalformedCatalog.
    """
    try:
        tree = etree.parse(str(path))
    except (OSError, etree.XMLSyntaxError) as e:
        raise MalformedCatalog(f"Cannot read GCP file {path}: {e}") from e

    root = tree.getroot()
    if root.tag != CATALOG_ROOT:
        raise MalformedCatalog(
            f"Invalid GCP file {path}: root node is <{root.tag}>, expected <{CATALOG_ROOT}>"
        )

    catalog = []
    seen = set()
    for index, record in enumerate(root.findall(CATALOG_RECORD)):
        coord = record.find('Pt')
        if coord is None:
            raise MalformedCatalog(f"Invalid GCP file {path}: record {index} has no <Pt> field")
        name_node = record.find('NamePt')
        name = (name_node.text or '').strip() if name_node is not None else ''
        if not name:
            raise MalformedCatalog(f"Invalid GCP file {path}: record {index} has no <NamePt> field")

        text = (coord.text or '').strip()
        first = text.find(' ')
        second = text.find(' ', first + 1) if first >= 0 else -1
        if second < 0:
            raise MalformedCatalog(
                f"Invalid GCP file {path}: <Pt> of {name} is not 'x y z': {text!r}"
            )
        if name in seen:
            raise MalformedCatalog(f"Invalid GCP file {path}: duplicate GCP name {name}")
        seen.add(name)

        catalog.append(GcpPoint(
            name=name,
            x=_atof(text[:first]),
            y=_atof(text[first + 1:second]),
            z=_atof(text[second + 1:]),
        ))

    if not catalog:
        raise MalformedCatalog(f"Invalid GCP file {path}: no <{CATALOG_RECORD}> records")
    return catalog


def write_ground_coordinates(catalog: Sequence[GcpPoint], path) -> None:
    """Write the "x y z" input of XYZ2Im, one line per GCP, catalog order."""
    content = '\n'.join(f"{p.x:.3f} {p.y:.3f} {p.z:.3f}" for p in catalog)
    try:
        with open(path, 'w', encoding='utf-8', newline='\n') as f:
            f.write(content)
    except OSError as e:
        raise CoordinatesExportFailed(f"Cannot write GCP coordinates to {path}: {e}") from e


# ---------------------------------------------------------------------------
# Image selection
# ---------------------------------------------------------------------------

def select_images(full_pattern: str, regex: bool = False) -> List[str]:
    """
    Return the sorted names of regular files in the pattern's directory whose
    name matches its last component (a shell glob, or a regex if regex=True).
    """
    pattern_path = Path(full_pattern)
    directory = pattern_path.parent
    name_pattern = pattern_path.name
    try:
        matcher = re.compile(name_pattern if regex else fnmatch.translate(name_pattern))
    except re.error as e:
        raise NoMatchingImages(f"Invalid image pattern {name_pattern!r}: {e}") from e

    try:
        entries = list(os.scandir(directory))
    except OSError as e:
        raise NoMatchingImages(f"Cannot list image directory {directory}: {e}") from e

    images = {
        entry.name for entry in entries
        if entry.is_file() and matcher.fullmatch(entry.name)
    }
    if not images:
        raise NoMatchingImages(f"No image in {directory} matches {name_pattern!r}")
    return sorted(images)


# ---------------------------------------------------------------------------
# Projection files
# ---------------------------------------------------------------------------

def orientation_path(orientation_dir, image_name: str) -> Path:
    return Path(orientation_dir) / f"{ORIENTATION_PREFIX}{image_name}.xml"


def projection_path(dataset_root, image_name: str) -> Path:
    """DSC_01.jpg -> <root>/DSC_01-GCP.jpg.txt"""
    dot = image_name.rfind('.')
    if dot < 0:
        dot = len(image_name)
    return Path(dataset_root) / f"{image_name[:dot]}{PROJECTION_POSTFIX}{image_name[dot:]}.txt"


def _parse_projection(line: str) -> Optional[ProjectedCoordinate]:
    x_text, space, y_text = line.strip().partition(' ')
    if not space:
        return None
    try:
        return ProjectedCoordinate(float(x_text), float(y_text))
    except ValueError:
        return None


def read_projections(path, gcp_count: int) -> List[Optional[ProjectedCoordinate]]:
    """
    Read XYZ2Im output: one "x y" line per GCP, catalog order.

    Malformed lines keep their position as None so later lines still map to
    the right GCP. A file whose line count differs from gcp_count cannot be
    lined up with the catalog and raises ProjectionCountMismatch.
    """
    path = Path(path)
    try:
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            lines = f.read().splitlines()
    except FileNotFoundError as e:
        raise ProjectionMissing(f"Image coordinate file not found: {path}") from e
    except OSError as e:
        raise ProjectionMissing(f"Cannot read image coordinate file {path}: {e}") from e

    while lines and not lines[-1].strip():
        lines.pop()
    if len(lines) != gcp_count:
        raise ProjectionCountMismatch(
            f"{path} has {len(lines)} coordinate lines for {gcp_count} GCPs"
        )
    return [_parse_projection(line) for line in lines]


def in_bounds(coord: ProjectedCoordinate, width: int, height: int) -> bool:
    """Inclusive on both edges: x == width and y == height are inside."""
    return 0.0 <= coord.x <= width and 0.0 <= coord.y <= height


def _remove_quietly(path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        print(f"  WARNING: could not remove {path}: {e}")


# ---------------------------------------------------------------------------
# Association
# ---------------------------------------------------------------------------

def _tool_echo(quiet: bool):
    if quiet:
        return None
    return lambda line: print(f"    [{micmac.SOLVER_NAME}] {line}")


def associate_image(config: RunConfig,
                    image_name: str,
                    catalog: Sequence[GcpPoint],
                    solver: str,
                    metadata_tool: str,
                    association: Dict[str, List[str]]) -> List[str]:
    """
    Project, measure and bound-check one image, appending it to the entry of
    every GCP it sees. Returns the names of those GCPs.

    Raises a PipelineError or micmac.ToolError when the image has to be
    skipped; the per-image coordinate file is removed either way.
    """
    orientation = orientation_path(config.orientation_dir, image_name)
    if not orientation.is_file():
        raise OrientationFileMissing(f"Orientation file not found: {orientation}")

    output = projection_path(config.dataset_root, image_name)
    try:
        try:
            micmac.run_xyz2im(solver, orientation, config.coordinates_file, output,
                              timeout=config.timeout, on_line=_tool_echo(config.quiet))
        except micmac.ToolError as e:
            # The output file is the real success signal, checked below.
            print(f"  WARNING: {e}")

        meta = micmac.read_metadata(metadata_tool, config.dataset_root / image_name,
                                    timeout=config.timeout)
        if meta.filename != image_name:
            print(f"  WARNING: {micmac.METADATA_TOOL_NAME} reports {meta.filename} for {image_name}")

        projections = read_projections(output, len(catalog))
    finally:
        _remove_quietly(output)

    visible = []
    for gcp, coord in zip(catalog, projections):
        if coord is None or not in_bounds(coord, meta.width, meta.height):
            continue
        association.setdefault(gcp.name, []).append(image_name)
        visible.append(gcp.name)
    return visible


def build_associations(config: RunConfig,
                       images: Sequence[str],
                       catalog: Sequence[GcpPoint],
                       solver: str,
                       metadata_tool: str) -> Tuple[Dict[str, List[str]], Dict[str, str]]:
    """
    Run associate_image() over every image, one at a time.

    Returns (association, skipped): GCP name -> image names in selection
    order, and image name -> reason for every image that was skipped.
    """
    association: Dict[str, List[str]] = {}
    skipped: Dict[str, str] = {}
    total = len(images)
    for index, image_name in enumerate(images, 1):
        print(f"  [{index}/{total}] {image_name}")
        try:
            visible = associate_image(config, image_name, catalog, solver,
                                      metadata_tool, association)
        except (PipelineError, micmac.ToolError) as e:
            print(f"  WARNING: skipping {image_name}: {e}")
            skipped[image_name] = str(e)
            continue
        print(f"    {len(visible)} GCP(s) inside: {', '.join(visible) if visible else '-'}")
    return association, skipped


# ---------------------------------------------------------------------------
# Pattern compression
# ---------------------------------------------------------------------------

def compress(names: Sequence[str]) -> str:
    """
    Factor the longest prefix and suffix every name shares with the first one
    out of an alternation:

        ["IMG_0001.jpg", "IMG_0002.jpg"] -> "IMG_000(1|2).jpg"

    Only one prefix and one suffix are factored. When they would overlap in
    the shortest name, identical names collapse to "name(|...|)" and anything
    else falls back to "(name1|name2|...)".
    """
    if not names:
        raise ValueError("compress() needs at least one name")
    first = names[0]
    if len(names) == 1:
        return first

    reversed_first = first[::-1]
    prefix_len = len(first)
    suffix_len = len(first)
    for name in names[1:]:
        prefix_len = min(prefix_len, len(os.path.commonprefix([first, name])))
        suffix_len = min(suffix_len, len(os.path.commonprefix([reversed_first, name[::-1]])))

    shortest = min(len(name) for name in names)
    if prefix_len + suffix_len > shortest:
        if all(name == first for name in names):
            suffix_len = 0
        else:
            return '(' + '|'.join(names) + ')'

    middles = [name[prefix_len:len(name) - suffix_len] for name in names]
    return first[:prefix_len] + '(' + '|'.join(middles) + ')' + first[len(first) - suffix_len:]


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def render(images: Sequence[str], pattern: bool) -> str:
    return compress(images) if pattern else '\n'.join(images)


def write_results(association: Dict[str, List[str]], out_dir, pattern: bool) -> List[Path]:
    """
    Write <out_dir>/<GCP>-GCP2IMGS.txt for every GCP, sorted by name.

    A file that cannot be written is reported and skipped.
    """
    out_dir = Path(out_dir)
    try:
        out_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OutputDirUnavailable(f"Cannot create directory {out_dir}: {e}") from e

    written = []
    for gcp_name in sorted(association):
        out_path = out_dir / f"{gcp_name}{RESULT_SUFFIX}"
        try:
            with open(out_path, 'w', encoding='utf-8', newline='\n') as f:
                f.write(render(association[gcp_name], pattern))
        except OSError as e:
            error = OutputWriteFailed(f"Cannot create file {out_path}: {e}")
            print(f"  WARNING: {error}")
            continue
        written.append(out_path)
    return written


# ---------------------------------------------------------------------------
# Pipeline runner
# ---------------------------------------------------------------------------

def run_pipeline(config: RunConfig) -> List[Path]:
    """Run every stage for config and return the result files written."""
    if not config.orientation_dir.is_dir():
        raise MissingInput(f"Cannot find orientations directory: {config.orientation_dir}")
    if not config.gcp_path.is_file():
        raise MissingInput(f"Cannot find Ground Control Points file: {config.gcp_path}")

    print(f"Selecting images matching {config.image_pattern}...")
    images = select_images(config.image_pattern, regex=config.regex)
    print(f"  {len(images)} images")

    print(f"Parsing GCP file {config.gcp_path}...")
    catalog = load_catalog(config.gcp_path)
    print(f"  {len(catalog)} GCPs")

    solver = micmac.find_solver(config.init_path)
    metadata_tool = micmac.find_metadata_tool(config.init_path)

    write_ground_coordinates(catalog, config.coordinates_file)
    try:
        print("Projecting GCPs into images...")
        association, skipped = build_associations(config, images, catalog,
                                                  solver, metadata_tool)
    finally:
        _remove_quietly(config.coordinates_file)

    print(f"  {len(images) - len(skipped)} images processed, {len(skipped)} skipped")
    if not association:
        raise EmptyAssociation(
            f"No GCP projects inside any of the {len(images)} selected images"
        )

    print(f"Writing results to {config.output_dir}...")
    written = write_results(association, config.output_dir, config.pattern)
    print(f"  {len(written)} of {len(association)} GCP files written")
    return written


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def parse_pattern_flag(value: str, current: bool) -> bool:
    """'true' -> True; 'false' or a leading integer of 0 ('0', 'no') -> False."""
    value = value.strip().lower()
    if value == 'true':
        return True
    match = re.match(r'[+-]?\d+', value)
    if value == 'false' or int(match.group(0) if match else 0) == 0:
        return False
    return current


def parse_named_args(items: Sequence[str], out_dir: str, pattern: bool,
                     init_path: str) -> Tuple[str, bool, str]:
    """
    Apply MicMac-style Name=Value arguments (Out, Pattern, InitPath).
    Items without '=' and unknown names are ignored.
    """
    for item in items:
        name, eq, value = item.partition('=')
        if not eq:
            continue
        if name == 'Out':
            out_dir = value
        elif name == 'Pattern':
            pattern = parse_pattern_flag(value, pattern)
        elif name == 'InitPath':
            init_path = value
    return out_dir, pattern, init_path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Associate ground control points with the images they are visible in '
                    '(mm3d XYZ2Im + exiv2) and write <GCP>-GCP2IMGS.txt files.'
    )
    parser.add_argument('image_pattern', help='Full directory + image pattern, e.g. "/data/DSC_*.jpg"')
    parser.add_argument('orientation',   help='Orientation directory (Ori- prefix optional)')
    parser.add_argument('gcp_file',      help='Ground control points XML file, relative to the image directory')
    parser.add_argument('named', nargs='*', metavar='Name=Value',
                        help='MicMac-style options: Out=, Pattern=, InitPath=')
    parser.add_argument('--out', default=DEFAULT_OUT_DIR,
                        help=f'Output directory, relative to the image directory (default {DEFAULT_OUT_DIR})')
    parser.add_argument('--list', action='store_true',
                        help='Write full image lists instead of compact patterns')
    parser.add_argument('--init-path', default=os.getcwd(),
                        help='MicMac bin directory used to find mm3d and exiv2 (default: cwd)')
    parser.add_argument('--regex', action='store_true',
                        help='Treat the image pattern as a regular expression instead of a glob')
    parser.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT,
                        help=f'Seconds allowed per external tool call, 0 disables (default {DEFAULT_TIMEOUT:g})')
    parser.add_argument('--quiet', action='store_true',
                        help='Do not echo mm3d output')
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    out_dir, pattern, init_path = parse_named_args(
        args.named, args.out, not args.list, args.init_path
    )
    config = RunConfig(
        image_pattern=args.image_pattern,
        orientation=args.orientation,
        gcp_file=args.gcp_file,
        out_dir=out_dir,
        pattern=pattern,
        init_path=init_path,
        regex=args.regex,
        timeout=args.timeout or None,
        quiet=args.quiet,
    )

    try:
        written = run_pipeline(config)
    except EmptyAssociation as e:
        print(f"\nNo output written: {e}.")
        print("Check the orientation directory and the GCP coordinate system.")
        return 1
    except (PipelineError, micmac.ToolError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"\nWrote {len(written)} file(s) to {config.output_dir}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
