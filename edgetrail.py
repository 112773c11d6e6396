#!/usr/bin/env python3
"""
Edge Trail / Motion Trail Compositing

Turns a folder of still frames into a sequence of "motion trail" images. Every
output frame overlays the Sobel edge map of one frame with the edge maps of
several preceding frames, spaced a fixed number of frames apart, so recent
motion shows up as accumulated edges.
"""

import argparse
import multiprocessing as mp
import re
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path

import cv2
import matplotlib.pyplot as plt
import numpy as np
from tqdm import tqdm


DEFAULT_INPUT_FOLDER = "images"
DEFAULT_OUTPUT_FOLDER = "images-out"
DEFAULT_EXTENSION = "jpg"
DEFAULT_QUALITY = 95
ACTIVITY_GRAPH_NAME = "edge_activity.png"


class EdgeTrailError(Exception):
    """Base class for every error raised while building edge trails."""


class DecodeError(EdgeTrailError):
    """An input file could not be decoded as an image."""


class DimensionMismatch(EdgeTrailError, ValueError):
    """Frames or buffers do not share the canonical dimensions."""


class EmptyInputError(EdgeTrailError, ValueError):
    """There are no input frames to process."""


def default_workers():
    return min(mp.cpu_count(), 8)


# ---------------------------------------------------------------------------
# Frame source
# ---------------------------------------------------------------------------

def natural_sort_key(path):
    """Sort key that compares digit runs numerically (frame2 < frame10)."""
    parts = re.split(r"(\d+)", Path(path).name)
    return [int(part) if part.isdecimal() else part.lower() for part in parts]


def frame_sort_key(path):
    """Natural order, with the exact file name breaking ties (frame01 vs frame1)."""
    return natural_sort_key(path), Path(path).name


def list_frame_files(input_dir):
    """
    List the frame files of a folder in temporal order.

    Temporal order is natural filename order, with ties broken by the exact
    file name. Hidden files and sub-directories are skipped.

    Args:
        input_dir: Folder holding the still frames

    Returns:
        List of Path objects sorted by natural filename order
    """
    input_dir = Path(input_dir)
    if not input_dir.is_dir():
        raise FileNotFoundError(f"Input folder not found: {input_dir}")

    files = [p for p in input_dir.iterdir() if p.is_file() and not p.name.startswith(".")]
    return sorted(files, key=frame_sort_key)


def select_frame_range(paths, start=0, end=None):
    """
    Keep the frames between start and end (0-based, inclusive).

    Args:
        paths: Ordered frame paths
        start: First frame to keep
        end: Last frame to keep (None = until the last frame)
    """
    if start < 0:
        raise ValueError("start must be non-negative")
    if end is not None and end < start:
        raise ValueError("end must be greater than or equal to start")

    stop = None if end is None else end + 1
    return list(paths[start:stop])


def decode_frame(path):
    """Decode one image file into a single-channel uint8 frame."""
    frame = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    if frame is None:
        raise DecodeError(f"Could not decode image file: {path}")
    return frame


def load_frames(paths, workers=None, progress=True):
    """
    Decode every frame in parallel, preserving the order of paths.

    Args:
        paths: Ordered frame paths
        workers: Number of worker threads (None = auto-detect)
        progress: Show a tqdm progress bar

    Returns:
        List of grayscale frames
    """
    paths = list(paths)
    with ThreadPoolExecutor(max_workers=workers or default_workers()) as executor:
        frames = list(tqdm(
            executor.map(decode_frame, paths),
            total=len(paths),
            desc="Loading frames",
            unit="frame",
            disable=not progress
        ))
    return frames


# ---------------------------------------------------------------------------
# Edge extraction and frame store
# ---------------------------------------------------------------------------

def edge_map(frame, dimensions=None):
    """
    Compute the Sobel gradient magnitude of a grayscale frame.

    Horizontal and vertical 3x3 Sobel derivatives are combined as
    sqrt(gx^2 + gy^2), saturated to 0-255 and truncated to uint8. Border
    pixels are replicated outward before convolving.

    Args:
        frame: 2-D grayscale frame (height x width)
        dimensions: Optional (width, height) the frame must match

    Returns:
        Read-only, flattened (row-major) uint8 edge buffer of width*height bytes
    """
    frame = np.asarray(frame)
    if frame.ndim != 2:
        raise DimensionMismatch(f"Expected a single-channel frame, got shape {frame.shape}")

    height, width = frame.shape
    if dimensions is not None and (width, height) != tuple(dimensions):
        expected_width, expected_height = dimensions
        raise DimensionMismatch(
            f"Frame is {width}x{height}, expected {expected_width}x{expected_height}"
        )

    source = frame.astype(np.float32)
    grad_x = cv2.Sobel(source, cv2.CV_32F, 1, 0, ksize=3, borderType=cv2.BORDER_REPLICATE)
    grad_y = cv2.Sobel(source, cv2.CV_32F, 0, 1, ksize=3, borderType=cv2.BORDER_REPLICATE)
    magnitude = cv2.magnitude(grad_x, grad_y)

    edges = np.clip(magnitude, 0, 255).astype(np.uint8).reshape(-1)
    edges.flags.writeable = False
    return edges


class FrameStore:
    """
    Ordered, read-only collection of edge buffers sharing one frame size.

    The first frame fixes the canonical dimensions; every buffer is exactly
    width*height bytes.
    """

    def __init__(self, edges, width, height):
        self.width = int(width)
        self.height = int(height)
        self.buf_size = self.width * self.height

        buffers = []
        for idx, buf in enumerate(edges):
            buf = np.asarray(buf, dtype=np.uint8)
            if buf.ndim != 1 or buf.shape[0] != self.buf_size:
                raise DimensionMismatch(
                    f"Edge buffer {idx} holds {buf.size} bytes, expected {self.buf_size}"
                )
            if buf.flags.writeable:
                buf = buf.copy()
                buf.flags.writeable = False
            buffers.append(buf)

        if not buffers:
            raise EmptyInputError("No frames to process")
        self._edges = tuple(buffers)

    @classmethod
    def from_frames(cls, frames, workers=None, progress=True):
        """
        Build a store by running edge extraction over every frame.

        Args:
            frames: Ordered grayscale frames
            workers: Number of worker threads (None = auto-detect)
            progress: Show a tqdm progress bar

        Raises:
            EmptyInputError: frames is empty
            DimensionMismatch: a frame differs in size from the first frame
        """
        frames = list(frames)
        if not frames:
            raise EmptyInputError("No frames to process")

        first = np.asarray(frames[0])
        if first.ndim != 2:
            raise DimensionMismatch(f"Frame 0 is not single-channel (shape {first.shape})")
        height, width = first.shape

        for idx, frame in enumerate(frames):
            if np.shape(frame) != (height, width):
                raise DimensionMismatch(
                    f"Frame {idx} has shape {np.shape(frame)}, expected {width}x{height}"
                )

        extract = partial(edge_map, dimensions=(width, height))
        with ThreadPoolExecutor(max_workers=workers or default_workers()) as executor:
            edges = list(tqdm(
                executor.map(extract, frames),
                total=len(frames),
                desc="Extracting edges",
                unit="frame",
                disable=not progress
            ))

        return cls(edges, width, height)

    @property
    def dimensions(self):
        return self.width, self.height

    def __len__(self):
        return len(self._edges)

    def __getitem__(self, index):
        return self._edges[index]

    def buffers(self, indices):
        return [self._edges[i] for i in indices]


# ---------------------------------------------------------------------------
# Window selection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WindowSpec:
    """How many frames go into one trail and how far apart they are."""

    frames_to_combine: int
    frame_spacing: int

    def __post_init__(self):
        for name in ("frames_to_combine", "frame_spacing"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
                raise ValueError(f"{name} must be an integer, got {value!r}")
            if value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")


def select_window(target_index, spec, n_frames):
    """
    Pick the source frames that make up the trail for target_index.

    Candidates are target_index - j * frame_spacing for j in
    range(frames_to_combine); candidates before frame 0 are dropped, so the
    window shrinks near the start of the sequence. Repeated indices are
    dropped too, which makes a spacing of 0 yield just [target_index].

    Args:
        target_index: Output frame index (0-based)
        spec: WindowSpec
        n_frames: Number of frames in the store

    Returns:
        List of source indices, most recent first
    """
    if not 0 <= target_index < n_frames:
        raise IndexError(f"Frame index {target_index} is outside 0..{n_frames - 1}")

    if spec.frames_to_combine == 0:
        return []
    if spec.frame_spacing == 0:
        return [target_index]

    # Offsets grow with j, so the first underflow ends the window
    reach = min(spec.frames_to_combine - 1, target_index // spec.frame_spacing)
    return [target_index - j * spec.frame_spacing for j in range(reach + 1)]


# ---------------------------------------------------------------------------
# Compositing
# ---------------------------------------------------------------------------

def partition_offsets(buf_size, parts):
    """
    Split 0..buf_size into at most `parts` contiguous, disjoint ranges.

    Returns:
        List of (start, stop) tuples covering every offset exactly once
    """
    if parts < 1:
        raise ValueError("parts must be positive")
    if buf_size <= 0:
        return []

    parts = min(parts, buf_size)
    step, extra = divmod(buf_size, parts)
    ranges = []
    start = 0
    for i in range(parts):
        stop = start + step + (1 if i < extra else 0)
        ranges.append((start, stop))
        start = stop
    return ranges


def _or_range(result, sources, offsets):
    start, stop = offsets
    out = result[start:stop]
    for buf in sources:
        np.bitwise_or(out, buf[start:stop], out=out)


def combine(sources, buf_size, workers=None, executor=None):
    """
    OR-reduce edge buffers into a fresh composite buffer.

    The output is split into disjoint offset ranges and each worker ORs every
    source into its own range only, so no byte is written by two workers.

    Args:
        sources: Edge buffers to combine (order does not matter)
        buf_size: Length every source must have
        workers: Number of offset ranges / workers (None = auto-detect)
        executor: Optional executor to reuse instead of a private pool

    Returns:
        uint8 buffer of buf_size bytes (all zeros when sources is empty)
    """
    checked = []
    for idx, buf in enumerate(sources):
        buf = np.asarray(buf)
        if buf.ndim != 1 or buf.shape[0] != buf_size:
            raise DimensionMismatch(
                f"Source buffer {idx} holds {buf.size} bytes, expected {buf_size}"
            )
        checked.append(buf)

    result = np.zeros(buf_size, dtype=np.uint8)
    if not checked:
        return result

    ranges = partition_offsets(buf_size, workers or default_workers())
    if len(ranges) <= 1:
        for offsets in ranges:
            _or_range(result, checked, offsets)
        return result

    task = partial(_or_range, result, checked)
    if executor is not None:
        list(executor.map(task, ranges))
    else:
        with ThreadPoolExecutor(max_workers=len(ranges)) as pool:
            list(pool.map(task, ranges))
    return result


def composite_frames(store, spec, workers=None, verbose=False):
    """
    Yield (index, composite buffer) for every frame index, in order.

    Args:
        store: FrameStore
        spec: WindowSpec
        workers: Workers per composite (None = auto-detect)
        verbose: Print the combine time of each frame
    """
    workers = workers or default_workers()
    with ThreadPoolExecutor(max_workers=workers) as executor:
        for index in range(len(store)):
            window = select_window(index, spec, len(store))
            combine_start = time.perf_counter()
            composite = combine(store.buffers(window), store.buf_size, workers, executor)
            if verbose:
                elapsed = (time.perf_counter() - combine_start) * 1000
                tqdm.write(f"Combining frames for image {index + 1} took {elapsed:.2f} ms")
            yield index, composite


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def output_name(index, ext=DEFAULT_EXTENSION):
    """File name for output frame `index` (0-based): 1-based, 4-digit padded."""
    return f"{index + 1:04d}.{ext.lstrip('.')}"


def add_timestamp_overlay(frame, frame_count, total_frames):
    """
    Add frame count overlay to the bottom left corner of the frame.

    Args:
        frame: Grayscale frame to add overlay to
        frame_count: Current frame number (1-based)
        total_frames: Total number of frames

    Returns:
        Frame with timestamp overlay
    """
    overlay = frame.copy()
    font = cv2.FONT_HERSHEY_SIMPLEX
    # Scale with the frame so small sequences stay legible
    font_scale = max(0.3, min(1.2, frame.shape[0] / 400))
    font_thickness = 1 if font_scale < 0.8 else 2
    text_color = 255
    bg_color = 0

    timestamp_text = f"Frame: {frame_count}/{total_frames}"
    (text_width, text_height), baseline = cv2.getTextSize(timestamp_text, font, font_scale, font_thickness)

    x_pos = 10
    y_pos = frame.shape[0] - 10

    cv2.rectangle(overlay,
                  (x_pos - 5, y_pos - text_height - baseline - 5),
                  (x_pos + text_width + 5, y_pos + baseline + 5),
                  bg_color, -1)
    cv2.putText(overlay, timestamp_text, (x_pos, y_pos - baseline),
                font, font_scale, text_color, font_thickness, cv2.LINE_AA)

    return overlay


def _encode_params(path, quality):
    suffix = Path(path).suffix.lower()
    if suffix in (".jpg", ".jpeg"):
        return [cv2.IMWRITE_JPEG_QUALITY, int(quality)]
    if suffix == ".webp":
        return [cv2.IMWRITE_WEBP_QUALITY, int(quality)]
    return []


def write_frame(buffer, dimensions, path, quality=DEFAULT_QUALITY, timestamp=None, max_retries=3):
    """
    Encode a composite buffer and write it to disk, retrying on failure.

    Args:
        buffer: Flat uint8 buffer of width*height bytes
        dimensions: (width, height)
        path: Output file path; the suffix picks the format
        quality: JPEG/WebP quality (1-100)
        timestamp: Optional (frame_count, total_frames) to overlay
        max_retries: Write attempts before giving up

    Returns:
        True if the file was written, False otherwise
    """
    width, height = dimensions
    buffer = np.asarray(buffer, dtype=np.uint8)
    if buffer.size != width * height:
        raise DimensionMismatch(
            f"Composite holds {buffer.size} bytes, expected {width}x{height}"
        )

    image = buffer.reshape(height, width)
    if timestamp is not None:
        image = add_timestamp_overlay(image, *timestamp)

    params = _encode_params(path, quality)
    for attempt in range(max_retries):
        try:
            if cv2.imwrite(str(path), image, params):
                return True
        except cv2.error as e:
            if attempt == max_retries - 1:
                print(f"Error writing {path}: {e}")
                return False
        if attempt < max_retries - 1:
            time.sleep(0.1 * (attempt + 1))  # Progressive delay

    print(f"Warning: Failed to write {path} after {max_retries} attempts")
    return False


@dataclass
class RenderSummary:
    output_dir: Path
    written: list = field(default_factory=list)
    failed: list = field(default_factory=list)


def render_trails(store, spec, output_dir, ext=DEFAULT_EXTENSION, quality=DEFAULT_QUALITY,
                  timestamp=False, workers=None, verbose=False, progress=True):
    """
    Composite and save one trail image per frame index.

    Write failures are reported and skipped; the remaining frames are still
    produced. Dimension errors abort the run.

    Args:
        store: FrameStore
        spec: WindowSpec
        output_dir: Output folder (created if missing)
        ext: Output file extension
        quality: JPEG/WebP quality (1-100)
        timestamp: Overlay "Frame: n/total" on each output
        workers: Workers per composite (None = auto-detect)
        verbose: Print per-frame combine timings
        progress: Show a tqdm progress bar

    Returns:
        RenderSummary with written paths and failed indices
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    summary = RenderSummary(output_dir=output_dir)
    total = len(store)

    frames = composite_frames(store, spec, workers, verbose)
    for index, composite in tqdm(frames, total=total, desc="Writing trail frames",
                                 unit="frame", disable=not progress):
        path = output_dir / output_name(index, ext)
        overlay = (index + 1, total) if timestamp else None
        if write_frame(composite, store.dimensions, path, quality, overlay):
            summary.written.append(path)
        else:
            summary.failed.append(index)

    print(f"Generated {len(summary.written)} trail frames in {output_dir}")
    if summary.failed:
        shown = [i + 1 for i in summary.failed[:10]]
        more = "..." if len(summary.failed) > 10 else ""
        print(f"Warning: Failed to write {len(summary.failed)} frames: {shown}{more}")
    return summary


# ---------------------------------------------------------------------------
# Debug analysis
# ---------------------------------------------------------------------------

def calculate_edge_difference(edges1, edges2):
    """
    Calculate the difference between two edge buffers.

    Returns:
        float: mean absolute difference normalized to 0-1
    """
    diff = np.abs(edges1.astype(np.float32) - edges2.astype(np.float32))
    return float(np.mean(diff)) / 255.0


def edge_activity(store):
    """Change between each pair of consecutive edge buffers."""
    return [calculate_edge_difference(store[i - 1], store[i]) for i in range(1, len(store))]


def generate_activity_graph(changes, output_path):
    """
    Generate a graph showing edge activity over time.

    Args:
        changes: List of change values
        output_path: Path for output graph image
    """
    plt.figure(figsize=(12, 6))
    plt.plot(range(1, len(changes) + 1), changes, linewidth=1, alpha=0.7)
    plt.xlabel('Frame Number')
    plt.ylabel('Edge Change (0-1)')
    plt.title('Edge Activity Over Time')
    plt.grid(True, alpha=0.3)

    mean_change = np.mean(changes)
    max_change = np.max(changes)
    std_change = np.std(changes)

    stats_text = f'Mean: {mean_change:.3f}\nMax: {max_change:.3f}\nStd: {std_change:.3f}'
    plt.text(0.02, 0.98, stats_text, transform=plt.gca().transAxes,
             verticalalignment='top', bbox=dict(boxstyle='round', facecolor='wheat', alpha=0.8))

    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches='tight')
    plt.close()
    print(f"Activity graph saved to: {output_path}")


def analyze_activity(store, output_dir):
    """
    Measure frame-to-frame edge change without writing trail images.

    Prints statistics and saves the activity graph into output_dir.

    Returns:
        List of change values (one per consecutive frame pair)
    """
    changes = edge_activity(store)
    if not changes:
        print("Not enough frames for activity analysis (need at least 2)")
        return changes

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    generate_activity_graph(changes, output_dir / ACTIVITY_GRAPH_NAME)

    print(f"\nEdge Activity Statistics:")
    print(f"Frame pairs analyzed: {len(changes)}")
    print(f"Mean change: {np.mean(changes):.4f}")
    print(f"Max change: {np.max(changes):.4f} (frame {int(np.argmax(changes)) + 2})")
    print(f"Min change: {np.min(changes):.4f}")
    print(f"Std deviation: {np.std(changes):.4f}")

    print(f"\nChange percentiles:")
    for p in [50, 75, 90, 95, 99]:
        print(f"  {p}th percentile: {np.percentile(changes, p):.4f}")

    return changes


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main(argv=None):
    """Main entry point for the edge trail tool."""
    parser = argparse.ArgumentParser(
        description="Combine the edge maps of recent frames into motion trail images"
    )

    parser.add_argument(
        "-i", "--input-folder",
        default=DEFAULT_INPUT_FOLDER,
        help=f"Folder of input frames, ordered by file name (default: {DEFAULT_INPUT_FOLDER})"
    )

    parser.add_argument(
        "-o", "--output-folder",
        default=DEFAULT_OUTPUT_FOLDER,
        help=f"Folder for the trail frames (default: {DEFAULT_OUTPUT_FOLDER})"
    )

    parser.add_argument(
        "-f", "--frames",
        type=int,
        required=True,
        help="How many frames to combine into each output frame"
    )

    parser.add_argument(
        "-s", "--frame-spacing",
        type=int,
        required=True,
        help="Gap, in frames, between the frames that are combined"
    )

    parser.add_argument(
        "--start",
        type=int,
        default=0,
        help="First input frame to use (0-based, default: 0)"
    )

    parser.add_argument(
        "--end",
        type=int,
        help="Last input frame to use (0-based, default: last frame)"
    )

    parser.add_argument(
        "--ext",
        default=DEFAULT_EXTENSION,
        help=f"Output image format extension (default: {DEFAULT_EXTENSION})"
    )

    parser.add_argument(
        "--quality",
        type=int,
        default=DEFAULT_QUALITY,
        help=f"JPEG quality 1-100 (default: {DEFAULT_QUALITY})"
    )

    parser.add_argument(
        "--timestamp",
        "--ts",
        action="store_true",
        help="Embed frame count on bottom left corner of each output"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Debug mode: analyze edge activity and save a graph without writing trail frames"
    )

    parser.add_argument(
        "--workers",
        type=int,
        help="Number of worker threads (default: auto-detect)"
    )

    parser.add_argument(
        "--no-parallel",
        action="store_true",
        help="Disable parallel processing (use a single worker)"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Print how long each output frame took to combine"
    )

    args = parser.parse_args(argv)

    input_dir = Path(args.input_folder)
    if not input_dir.is_dir():
        print(f"Error: Input folder not found: {input_dir}")
        sys.exit(1)

    if args.frames < 0:
        print("Error: --frames must be non-negative")
        sys.exit(1)

    if args.frame_spacing < 0:
        print("Error: --frame-spacing must be non-negative")
        sys.exit(1)

    if args.start < 0:
        print("Error: --start must be non-negative")
        sys.exit(1)

    if args.end is not None and args.end < args.start:
        print("Error: --end must be greater than or equal to --start")
        sys.exit(1)

    if not 1 <= args.quality <= 100:
        print("Error: --quality must be between 1 and 100")
        sys.exit(1)

    if args.workers is not None and args.workers <= 0:
        print("Error: --workers must be positive")
        sys.exit(1)

    if args.frames == 0:
        print("Warning: --frames is 0, every output frame will be blank")

    workers = 1 if args.no_parallel else (args.workers or default_workers())
    spec = WindowSpec(args.frames, args.frame_spacing)
    output_dir = Path(args.output_folder)

    try:
        paths = select_frame_range(list_frame_files(input_dir), args.start, args.end)
        print(f"Found {len(paths)} frames in {input_dir}")

        frames = load_frames(paths, workers)
        print("Loaded images")

        store = FrameStore.from_frames(frames, workers)
        del frames
        print(f"Got sobel frames ({store.width}x{store.height}, {len(store)} frames)")

        if args.debug:
            print("Debug mode: Analyzing edge activity")
            analyze_activity(store, output_dir)
            print("Edge activity analysis completed successfully!")
            return 0

        print(f"Combining {spec.frames_to_combine} frames spaced {spec.frame_spacing} apart "
              f"using {workers} workers")
        started = time.perf_counter()
        summary = render_trails(store, spec, output_dir, args.ext, args.quality,
                                args.timestamp, workers, args.verbose)
        elapsed = time.perf_counter() - started
        print(f"Processing took {elapsed:.2f} s "
              f"({elapsed / max(1, len(store)) * 1000:.1f} ms per frame)")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if summary.failed:
        sys.exit(2)

    print("Edge trail generation completed successfully!")
    return 0


if __name__ == "__main__":
    main()
