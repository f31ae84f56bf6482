"""
Pixel-to-color interning for XTS traces.

ColorTable maps raw 32-bit pixel values to ColorEntry records and keeps
them in ascending pixel order using a skip list. assign_colors() walks the
table in that order and gives every entry a distinct color from an HSV
sweep: the first two entries are white and black, the rest are spread
around the hue circle at half intensity.
"""
import numpy as np


MAX_LEVEL = 32
PIXEL_MAX = 0xFFFFFFFF

# Index of the head sentinel in the arena, and the end-of-chain marker.
HEAD = 0
NIL = -1


class ColorEntry:
    """One interned pixel value and its assigned color.

    r, g, b and rank stay None until assign_colors() runs.
    """
    __slots__ = ('pixel', 'r', 'g', 'b', 'rank')

    def __init__(self, pixel):
        self.pixel = pixel
        self.r = None
        self.g = None
        self.b = None
        self.rank = None

    @property
    def assigned(self):
        return self.r is not None

    @property
    def rgb(self):
        return (self.r, self.g, self.b)

    def __repr__(self):
        if self.assigned:
            return f"ColorEntry(0x{self.pixel:08x}, rgb={self.rgb}, rank={self.rank})"
        return f"ColorEntry(0x{self.pixel:08x}, unassigned)"


class ColorTable:
    """Ordered map from pixel value to ColorEntry.

    Nodes live in parallel lists indexed by node number; node 0 is the
    head sentinel whose forward list spans all MAX_LEVEL levels. Each
    other node's forward list is as long as its randomly drawn level.
    """

    def __init__(self, seed=None):
        self._rng = np.random.default_rng(seed)
        self._pixels = [None]
        self._entries = [None]
        self._forward = [[NIL] * MAX_LEVEL]

    def _random_level(self):
        # Each extra level is taken with probability 1/4.
        return min(int(self._rng.geometric(0.75)), MAX_LEVEL)

    def _search(self, pixel):
        """Return (node, update) where node holds pixel or is NIL."""
        update = [HEAD] * MAX_LEVEL
        node = HEAD
        for level in range(MAX_LEVEL - 1, -1, -1):
            nxt = self._forward[node][level]
            while nxt != NIL and self._pixels[nxt] < pixel:
                node = nxt
                nxt = self._forward[node][level]
            update[level] = node
        nxt = self._forward[node][0]
        if nxt != NIL and self._pixels[nxt] == pixel:
            return nxt, update
        return NIL, update

    def find(self, pixel):
        """Return the entry for pixel, or None if it was never inserted."""
        node, _ = self._search(pixel)
        if node == NIL:
            return None
        return self._entries[node]

    def find_or_insert(self, pixel):
        """Return the entry for pixel, creating an unassigned one if needed."""
        if not isinstance(pixel, (int, np.integer)) or isinstance(pixel, bool):
            raise ValueError(f"Pixel value must be an integer, got {pixel!r}")
        pixel = int(pixel)
        if pixel < 0 or pixel > PIXEL_MAX:
            raise ValueError(f"Pixel value out of 32-bit range: {pixel:#x}")

        node, update = self._search(pixel)
        if node != NIL:
            return self._entries[node]

        level = self._random_level()
        entry = ColorEntry(pixel)
        node = len(self._pixels)
        self._pixels.append(pixel)
        self._entries.append(entry)
        forward = [NIL] * level
        for i in range(level):
            prev = update[i]
            forward[i] = self._forward[prev][i]
            self._forward[prev][i] = node
        self._forward.append(forward)
        return entry

    def iterate_sorted(self):
        """Yield entries in strictly ascending pixel order."""
        node = self._forward[HEAD][0]
        while node != NIL:
            yield self._entries[node]
            node = self._forward[node][0]

    __iter__ = iterate_sorted

    @property
    def count(self):
        return len(self._pixels) - 1

    def __len__(self):
        return self.count

    def __contains__(self, pixel):
        return self.find(pixel) is not None

    def __repr__(self):
        return f"ColorTable({self.count} colors)"


def _channel(x):
    # Single-precision channel scaled in double precision, as in the C tool.
    value = int(np.floor(np.float64(x) * 255.0))
    return max(0, min(255, value))


def hsv_to_rgb(h, s, v):
    """Convert HSV in [0, 1] to an (r, g, b) tuple of 0-255 ints.

    All intermediate math is float32 so that results match the original
    converter bit for bit (v=0.5 gives 127, not 128).
    """
    h = np.float32(h)
    s = np.float32(s)
    v = np.float32(v)
    one = np.float32(1)

    if v == 0:
        return (0, 0, 0)
    if s == 0:
        c = _channel(v)
        return (c, c, c)

    h6 = np.float32(h * np.float32(6))
    while h6 >= 6:
        h6 = np.float32(h6 - np.float32(6))
    sector = int(np.floor(h6))
    f = np.float32(h6 - np.float32(sector))
    p = np.float32(v * (one - s))
    q = np.float32(v * (one - s * f))
    t = np.float32(v * (one - s * (one - f)))

    if sector == 1:
        rgb = (q, v, p)
    elif sector == 2:
        rgb = (p, v, t)
    elif sector == 3:
        rgb = (p, q, v)
    elif sector == 4:
        rgb = (t, p, v)
    elif sector == 5:
        rgb = (v, p, q)
    else:
        rgb = (v, t, p)
    return tuple(_channel(c) for c in rgb)


def sweep_hsv(index, count):
    """Return the (h, s, v) used for the entry at index out of count."""
    if index >= 2:
        h = np.float32(index - 2) / np.float32(count - 2)
        return (h, np.float32(1), np.float32(0.5))
    return (np.float32(0), np.float32(0), np.float32(1 - index))


def assign_colors(table, verbose=False):
    """Give every entry in table its final color, in ascending pixel order."""
    n = table.count
    for i, entry in enumerate(table.iterate_sorted()):
        h, s, v = sweep_hsv(i, n)
        r, g, b = hsv_to_rgb(h, s, v)
        if verbose:
            print(f"{h:f} {s:f} {v:f}")
            print(f"\t{r} {g} {b}")
        entry.r = r
        entry.g = g
        entry.b = b
        entry.rank = i
    return table
