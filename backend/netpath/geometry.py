from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np

EARTH_RADIUS_M = 6_371_000.0

Coord = tuple[float, float, float]


def _haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(max(0.0, a))))


def point_distance(x1: float, y1: float, x2: float, y2: float, *, geodesic: bool) -> float:
    """Distance between two points; x/y are lon/lat in geodesic mode."""
    if geodesic:
        return _haversine_m(y1, x1, y2, x2)
    return math.hypot(x2 - x1, y2 - y1)


def segment_lengths(coords: Sequence[Coord], *, geodesic: bool) -> list[float]:
    return [
        point_distance(a[0], a[1], b[0], b[1], geodesic=geodesic)
        for a, b in zip(coords, coords[1:])
    ]


def polyline_length(coords: Sequence[Coord], *, geodesic: bool) -> float:
    return float(sum(segment_lengths(coords, geodesic=geodesic)))


def as_xy_array(coords: Sequence[Coord]) -> np.ndarray:
    return np.asarray([(c[0], c[1]) for c in coords], dtype=np.float64)


def _to_local_xy(xy: np.ndarray, x: float, y: float) -> tuple[np.ndarray, np.ndarray]:
    # Equirectangular projection around the query point, good enough to pick the
    # closest segment and the foot of the perpendicular at snapping distances.
    scale = math.cos(math.radians(y))
    pts = np.column_stack((xy[:, 0] * scale, xy[:, 1]))
    return pts, np.array([x * scale, y], dtype=np.float64)


def project_point(
    coords: Sequence[Coord],
    xy: np.ndarray,
    x: float,
    y: float,
    *,
    geodesic: bool,
) -> tuple[float, float, Coord]:
    """Project (x, y) onto a polyline.

    Returns ``(distance, t, point)`` where ``t`` is the fraction of the line's
    length at the foot of the perpendicular. The first segment wins ties.
    """
    if len(coords) == 1:
        only = coords[0]
        return point_distance(x, y, only[0], only[1], geodesic=geodesic), 0.0, only
    if geodesic:
        pts, q = _to_local_xy(xy, x, y)
    else:
        pts, q = xy, np.array([x, y], dtype=np.float64)
    a = pts[:-1]
    b = pts[1:]
    ab = b - a
    denom = np.einsum("ij,ij->i", ab, ab)
    raw = np.einsum("ij,ij->i", q - a, ab)
    frac = np.divide(raw, denom, out=np.zeros_like(raw), where=denom > 0.0)
    frac = np.clip(frac, 0.0, 1.0)
    feet = a + ab * frac[:, None]
    planar = np.hypot(feet[:, 0] - q[0], feet[:, 1] - q[1])
    seg = int(np.argmin(planar))
    f = float(frac[seg])

    p0 = coords[seg]
    p1 = coords[seg + 1]
    point: Coord = (
        p0[0] + (p1[0] - p0[0]) * f,
        p0[1] + (p1[1] - p0[1]) * f,
        p0[2] + (p1[2] - p0[2]) * f,
    )
    lengths = segment_lengths(coords, geodesic=geodesic)
    total = float(sum(lengths))
    along = float(sum(lengths[:seg])) + lengths[seg] * f
    t = along / total if total > 0.0 else 0.0
    distance = point_distance(x, y, point[0], point[1], geodesic=geodesic)
    return distance, min(1.0, max(0.0, t)), point


def _cut_point(coords: Sequence[Coord], lengths: Sequence[float], target: float) -> tuple[int, Coord]:
    """Index of the segment containing ``target`` length and the point there."""
    acc = 0.0
    for idx, seg_len in enumerate(lengths):
        if acc + seg_len >= target or idx == len(lengths) - 1:
            f = 0.0 if seg_len <= 0.0 else min(1.0, max(0.0, (target - acc) / seg_len))
            p0 = coords[idx]
            p1 = coords[idx + 1]
            return idx, (
                p0[0] + (p1[0] - p0[0]) * f,
                p0[1] + (p1[1] - p0[1]) * f,
                p0[2] + (p1[2] - p0[2]) * f,
            )
        acc += seg_len
    return 0, coords[0]


def interpolate(coords: Sequence[Coord], t: float, *, geodesic: bool) -> Coord:
    if len(coords) == 1:
        return coords[0]
    lengths = segment_lengths(coords, geodesic=geodesic)
    _idx, point = _cut_point(coords, lengths, min(1.0, max(0.0, t)) * sum(lengths))
    return point


def substring(
    coords: Sequence[Coord],
    t_from: float,
    t_to: float,
    *,
    geodesic: bool,
) -> list[Coord]:
    """Part of a polyline between two length fractions, in travel order.

    ``t_from > t_to`` walks the line backwards.
    """
    if t_from > t_to:
        return list(reversed(substring(coords, t_to, t_from, geodesic=geodesic)))
    if len(coords) == 1:
        return [coords[0]]
    if t_from <= 0.0 and t_to >= 1.0:
        return list(coords)
    lengths = segment_lengths(coords, geodesic=geodesic)
    total = float(sum(lengths))
    start_idx, start_pt = _cut_point(coords, lengths, max(0.0, t_from) * total)
    end_idx, end_pt = _cut_point(coords, lengths, min(1.0, t_to) * total)
    out: list[Coord] = [start_pt]
    for idx in range(start_idx + 1, end_idx + 1):
        if coords[idx] != out[-1]:
            out.append(coords[idx])
    if end_pt != out[-1] or len(out) == 1:
        out.append(end_pt)
    return out


def join_lines(parts: Sequence[Sequence[Coord]]) -> list[Coord]:
    """Concatenate polylines, dropping the duplicated vertex at each joint."""
    out: list[Coord] = []
    for part in parts:
        for coord in part:
            if out and coord == out[-1]:
                continue
            out.append(coord)
    return out
