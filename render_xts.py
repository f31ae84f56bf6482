#!/usr/bin/env python3
"""
Module to parse and render XTS pixel-trace files.

XTS format (text, one or more frames back to back):
- Header line: "<width> <height> <depth>" in decimal
- Body lines: "<run>,<pixel>" (both hex) meaning pixel repeated run times,
  or a bare "<pixel>" (hex) meaning a run of 1
- The body ends once width*height pixels have been produced

Every distinct pixel value is interned in a ColorTable and given a color
by an HSV sweep; each frame is then written as its own PNG.

Usage:
    python render_xts.py [--scope frame|global] trace.xts [more.xts ...]
"""
import os
import re
import sys
import argparse
import numpy as np
from PIL import Image

from xts_colors import ColorTable, assign_colors, PIXEL_MAX


RUN_LINE = re.compile(r'\s*(?:0[xX])?([0-9a-fA-F]+),\s*(?:0[xX])?([0-9a-fA-F]+)')
PIXEL_LINE = re.compile(r'\s*(?:0[xX])?([0-9a-fA-F]+)')
DECIMAL = re.compile(r'[+-]?[0-9]+')

SCOPES = ('frame', 'global')


class ParseError(ValueError):
    """Malformed XTS content. Decoding of the current file stops."""

    def __init__(self, message, source=None, line_number=None, line=None):
        self.message = message
        self.source = source
        self.line_number = line_number
        self.line = line
        super().__init__(str(self))

    def __str__(self):
        where = self.source or '<input>'
        if self.line_number is not None:
            where = f"{where}:{self.line_number}"
        text = f"{where}: {self.message}"
        if self.line is not None:
            text += f" ({self.line.rstrip()!r})"
        return text


class EncoderError(RuntimeError):
    """The image encoder could not write an output file."""

    def __init__(self, path, cause):
        self.path = path
        self.cause = cause
        super().__init__(f"{path}: {cause}")


class Frame:
    """One decoded frame: dimensions plus row-major uint32 pixel keys."""

    def __init__(self, width, height, depth, pixels, source=None, index=0):
        self.width = width
        self.height = height
        self.depth = depth
        self.pixels = pixels
        self.source = source
        self.index = index

    def __repr__(self):
        return f"Frame({self.width}x{self.height}x{self.depth}, source={self.source!r}, index={self.index})"


class _LineReader:
    """Wrap an iterable of lines and count them for error messages."""

    def __init__(self, lines, source=None):
        self._lines = iter(lines)
        self.source = source
        self.line_number = 0

    def readline(self):
        """Return the next line, or None at end of input."""
        line = next(self._lines, None)
        if line is not None:
            self.line_number += 1
        return line

    def error(self, message, line=None):
        return ParseError(message, self.source, self.line_number, line)


def _reader(lines, source):
    if isinstance(lines, _LineReader):
        return lines
    return _LineReader(lines, source)


def parse_header(line):
    """Parse "width height depth". Returns a tuple or None if malformed."""
    fields = line.split()
    if len(fields) < 3:
        return None
    if not all(DECIMAL.fullmatch(x) for x in fields[:3]):
        return None
    width, height, depth = (int(x) for x in fields[:3])
    return width, height, depth


def parse_run(line):
    """Parse one body line into (run, pixel). Returns None if malformed.

    Text after the hex digits is ignored, like sscanf("%x,%x").
    """
    m = RUN_LINE.match(line)
    if m:
        return int(m.group(1), 16), int(m.group(2), 16)
    m = PIXEL_LINE.match(line)
    if m:
        return 1, int(m.group(1), 16)
    return None


def decode_frame(lines, table, source=None, index=0):
    """
    Decode one frame from lines, registering each pixel with table.

    Args:
        lines: iterable of text lines, positioned at a frame header
        table: ColorTable that receives find_or_insert() for every run
        source: input name used in error messages
        index: zero-based frame number within the source

    Returns:
        Frame, or None if only blank input remains (clean end of stream).

    Raises:
        ParseError on a bad header, bad body line or truncated body.
    """
    reader = _reader(lines, source)

    line = reader.readline()
    while line is not None and not line.strip():
        line = reader.readline()
    if line is None:
        return None

    header = parse_header(line)
    if header is None:
        raise reader.error("bad frame header", line)
    width, height, depth = header
    if width <= 0 or height <= 0:
        raise reader.error(f"bad frame size {width}x{height}", line)

    count = width * height
    pixels = np.zeros(count, dtype=np.uint32)
    pos = 0
    while pos < count:
        line = reader.readline()
        if line is None:
            raise reader.error(f"input ended after {pos} of {count} pixels")
        parsed = parse_run(line)
        if parsed is None:
            raise reader.error("run bad", line)
        run, pixel = parsed
        if pixel > PIXEL_MAX:
            raise reader.error("pixel value wider than 32 bits", line)
        if run > PIXEL_MAX:
            raise reader.error("run length wider than 32 bits", line)

        table.find_or_insert(pixel)
        # Runs past the end of the frame are cut to what is still needed.
        n = min(run, count - pos)
        pixels[pos:pos + n] = pixel
        pos += n

    return Frame(width, height, depth, pixels, source=source, index=index)


def read_frames(stream, table_factory, source=None):
    """
    Yield every frame in stream until a clean end of input.

    table_factory() is called once per frame and returns the ColorTable
    that frame registers its pixels with. A ParseError propagates and
    ends the iteration; frames already yielded stay valid.
    """
    reader = _reader(stream, source)
    index = 0
    while True:
        table = table_factory()
        frame = decode_frame(reader, table, source=source, index=index)
        if frame is None:
            return
        yield frame, table
        index += 1


def render_frame(frame, table):
    """Resolve a frame's pixels through table into a (height, width, 3) uint8 array."""
    values, inverse = np.unique(frame.pixels, return_inverse=True)

    # One lookup per distinct pixel, then scatter through the inverse index.
    lut = np.zeros((len(values), 3), dtype=np.uint8)
    for i, pixel in enumerate(values):
        entry = table.find_or_insert(int(pixel))
        if not entry.assigned:
            raise ValueError(f"Pixel 0x{int(pixel):08x} has no color assigned")
        lut[i] = entry.rgb

    img = lut[inverse.reshape(-1)]
    return img.reshape(frame.height, frame.width, 3)


def save_frame(rgb, path, fmt=None):
    """Encode an RGB array to path. Raises EncoderError on failure."""
    try:
        with Image.fromarray(np.ascontiguousarray(rgb, dtype=np.uint8)) as pil_img:
            pil_img.save(path, format=fmt)
    except (OSError, ValueError, KeyError) as e:
        raise EncoderError(path, e) from e


def output_name(input_path, index, extension='png', output_dir=None):
    """Derive "<base>-<index>.<extension>" from input_path's base name."""
    base = os.path.basename(input_path)
    stem, _ = os.path.splitext(base)
    name = f"{stem}-{index}.{extension}"
    if output_dir:
        return os.path.join(output_dir, name)
    return name


def _report(message):
    print(f"Error: {message}", file=sys.stderr)


def _emit(frame, table, extension, output_dir):
    """Render and save one frame. Returns the output path, or None on failure."""
    path = output_name(frame.source, frame.index, extension, output_dir)
    rgb = render_frame(frame, table)
    try:
        save_frame(rgb, path)
    except EncoderError as e:
        _report(e)
        return None
    print(f"Saved {path}")
    return path


def _decode_file(path, table_factory):
    """Yield (frame, table) pairs from path, reporting open and parse errors."""
    try:
        f = open(path, 'r', encoding='ascii', errors='replace')
    except OSError as e:
        _report(f"{path}: {e.strerror or e}")
        return
    with f:
        print(f"Processing {path}...")
        try:
            yield from read_frames(f, table_factory, source=path)
        except ParseError as e:
            _report(e)


def convert_files(inputs, scope='frame', output_dir=None, extension='png', seed=None, verbose=False):
    """
    Convert a batch of XTS files to images.

    Args:
        inputs: list of input file paths
        scope: 'frame' gives every frame its own ColorTable and writes it
               immediately; 'global' shares one table across the batch and
               writes only after every file has been decoded
        output_dir: directory for output images (default: current directory)
        extension: image file extension, which also selects the encoder
        seed: seed for the skip-list level generator
        verbose: print each HSV assignment

    Returns:
        List of output paths written.
    """
    if scope not in SCOPES:
        raise ValueError(f"Unknown color table scope: {scope!r}")
    if output_dir:
        try:
            os.makedirs(output_dir, exist_ok=True)
        except OSError as e:
            # Each frame then fails to save and is reported on its own.
            _report(f"{output_dir}: {e.strerror or e}")

    written = []

    if scope == 'frame':
        rng = np.random.default_rng(seed)

        def new_table():
            return ColorTable(seed=rng.integers(2 ** 32))

        for path in inputs:
            for frame, table in _decode_file(path, new_table):
                print(f"Frame {frame.index}: {frame.width}x{frame.height}, {table.count} colors")
                assign_colors(table, verbose=verbose)
                out = _emit(frame, table, extension, output_dir)
                if out:
                    written.append(out)
    else:
        shared = ColorTable(seed=seed)
        frames = []
        for path in inputs:
            for frame, _ in _decode_file(path, lambda: shared):
                frames.append(frame)
        print(f"{shared.count} colors")
        assign_colors(shared, verbose=verbose)
        for frame in frames:
            out = _emit(frame, shared, extension, output_dir)
            if out:
                written.append(out)

    print(f"Done. {len(written)} frames rendered.")
    return written


def main(argv=None):
    parser = argparse.ArgumentParser(description="Render XTS pixel-trace files to PNG frames")
    parser.add_argument('inputs', nargs='+', metavar='input', help='Input trace file (.xts)')
    parser.add_argument(
        '--scope',
        choices=SCOPES,
        default='frame',
        help='Color table scope: frame assigns colors per frame and writes each image as soon as it is decoded; '
             'global assigns one set of colors across every frame of every input, so a pixel value keeps its '
             'color throughout the batch.'
    )
    parser.add_argument('--output-dir', type=str, default=None, help='Output directory for images (default: current directory)')
    parser.add_argument('--format', type=str, default='png', help='Output image extension (default: png)')
    parser.add_argument('--seed', type=int, default=None, help='Seed for the color table level generator')
    parser.add_argument('-v', '--verbose', action='store_true', help='Print the HSV and RGB value assigned to every color')
    args = parser.parse_args(argv)

    convert_files(
        args.inputs,
        scope=args.scope,
        output_dir=args.output_dir,
        extension=args.format,
        seed=args.seed,
        verbose=args.verbose,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
