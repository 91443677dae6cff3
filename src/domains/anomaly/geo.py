"""Geospatial math: great-circle distance, impossible travel, location clustering."""

import math
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from .config import GeolocationConfig
from .models import ClusterResult, GeoPoint, NearestCluster, TravelAssessment

EARTH_RADIUS_KM = 6371.0

_UNVISITED = -2
_NOISE = -1


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance in km between two lat/lon points."""
    lat1_r, lon1_r = math.radians(lat1), math.radians(lon1)
    lat2_r, lon2_r = math.radians(lat2), math.radians(lon2)
    dlat = lat2_r - lat1_r
    dlon = lon2_r - lon1_r
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlon / 2) ** 2
    # Rounding can push antipodal points just past 1.0
    a = min(1.0, max(0.0, a))
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def _as_point(point: GeoPoint | Mapping[str, Any]) -> GeoPoint:
    if isinstance(point, GeoPoint):
        return point
    return GeoPoint.model_validate(point)


class GeoMath:
    """Distance, travel-speed and density-clustering helpers."""

    def __init__(self, config: GeolocationConfig | None = None) -> None:
        self._config = config or GeolocationConfig()

    def haversine_distance(self, lat1: float, lon1: float, lat2: float, lon2: float) -> float:
        return haversine(lat1, lon1, lat2, lon2)

    def is_impossible_travel(
        self,
        lat1: float,
        lon1: float,
        lat2: float,
        lon2: float,
        elapsed_seconds: float,
    ) -> TravelAssessment:
        """Check whether moving between two points in the elapsed time is plausible."""
        max_speed = self._config.max_travel_speed_kmh
        distance_km = haversine(lat1, lon1, lat2, lon2)

        if elapsed_seconds <= 0:
            # Same place at the same instant is fine; anywhere else is not
            if distance_km <= 0:
                return TravelAssessment(
                    impossible=False,
                    distance_km=0.0,
                    required_speed_kmh=0.0,
                    max_speed_kmh=max_speed,
                )
            return TravelAssessment(
                impossible=True,
                distance_km=round(distance_km, 2),
                required_speed_kmh=math.inf,
                max_speed_kmh=max_speed,
            )

        speed_kmh = distance_km / (elapsed_seconds / 3600.0)
        return TravelAssessment(
            impossible=speed_kmh > max_speed,
            distance_km=round(distance_km, 2),
            required_speed_kmh=round(speed_kmh, 2),
            max_speed_kmh=max_speed,
        )

    def cluster_locations(
        self, points: Iterable[GeoPoint | Mapping[str, Any]]
    ) -> ClusterResult:
        """DBSCAN over great-circle distance.

        Only the most recent ``cluster_max_points`` points are considered.
        A point with fewer than ``cluster_min_points`` neighbours (itself
        included) inside ``cluster_radius_km`` is noise unless it is reachable
        from a core point.
        """
        cfg = self._config
        pts = [_as_point(p) for p in points]
        if len(pts) > cfg.cluster_max_points:
            pts = pts[-cfg.cluster_max_points :]
        if not pts:
            return ClusterResult()

        labels = [_UNVISITED] * len(pts)
        cluster_id = 0

        for i in range(len(pts)):
            if labels[i] != _UNVISITED:
                continue
            neighbors = self._region_query(pts, i)
            if len(neighbors) < cfg.cluster_min_points:
                labels[i] = _NOISE
                continue

            labels[i] = cluster_id
            queue = [n for n in neighbors if n != i]
            while queue:
                j = queue.pop()
                if labels[j] == _NOISE:
                    # Border point
                    labels[j] = cluster_id
                if labels[j] != _UNVISITED:
                    continue
                labels[j] = cluster_id
                j_neighbors = self._region_query(pts, j)
                if len(j_neighbors) >= cfg.cluster_min_points:
                    queue.extend(n for n in j_neighbors if labels[n] in (_UNVISITED, _NOISE))
            cluster_id += 1

        clusters: list[list[GeoPoint]] = [[] for _ in range(cluster_id)]
        noise: list[GeoPoint] = []
        for point, label in zip(pts, labels, strict=True):
            if label == _NOISE:
                noise.append(point)
            else:
                clusters[label].append(point)

        return ClusterResult(clusters=clusters, noise=noise, cluster_count=len(clusters))

    def _region_query(self, pts: list[GeoPoint], index: int) -> list[int]:
        origin = pts[index]
        radius = self._config.cluster_radius_km
        return [
            j
            for j, other in enumerate(pts)
            if haversine(origin.lat, origin.lon, other.lat, other.lon) <= radius
        ]

    def cluster_center(self, points: Sequence[GeoPoint | Mapping[str, Any]]) -> GeoPoint:
        pts = [_as_point(p) for p in points]
        if not pts:
            raise ValueError("Cannot compute the center of an empty cluster")
        return GeoPoint(
            lat=sum(p.lat for p in pts) / len(pts),
            lon=sum(p.lon for p in pts) / len(pts),
        )

    def distance_to_nearest_cluster(
        self,
        lat: float,
        lon: float,
        clusters: Sequence[Sequence[GeoPoint | Mapping[str, Any]]],
    ) -> NearestCluster:
        nearest_id: int | None = None
        nearest_distance = math.inf

        for cluster_id, cluster in enumerate(clusters):
            if not cluster:
                continue
            center = self.cluster_center(cluster)
            distance = haversine(lat, lon, center.lat, center.lon)
            if distance < nearest_distance:
                nearest_id = cluster_id
                nearest_distance = distance

        if nearest_id is None:
            return NearestCluster(distance_km=math.inf, outside_cluster=True)

        return NearestCluster(
            nearest_cluster_id=nearest_id,
            distance_km=round(nearest_distance, 2),
            outside_cluster=nearest_distance > self._config.outside_cluster_km,
        )
