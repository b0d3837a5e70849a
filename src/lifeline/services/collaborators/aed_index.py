"""
AED index

Nearest-defibrillator lookup. The dispatch engine only depends on the
``AEDIndex`` interface; ``StaticAEDIndex`` ranks a JSON list of AED points by
great-circle distance.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from lifeline.core.geo import distance, is_finite_coordinate
from lifeline.models.emergency import AEDLocation


class AEDIndex(ABC):
    """Abstract nearest-AED lookup"""

    @abstractmethod
    async def find_nearest(self, latitude: float, longitude: float, k: int) -> List[AEDLocation]:
        """Return up to ``k`` AEDs ordered by distance, each with ``distance`` in metres"""
        pass


class StaticAEDIndex(AEDIndex):
    """AED index backed by an in-memory list loaded from a JSON file"""

    def __init__(self, points: Optional[List[Dict[str, Any]]] = None):
        self.logger = logging.getLogger(__name__)
        self.points: List[AEDLocation] = []
        for point in points or []:
            self.add_point(point)

    @classmethod
    def from_file(cls, data_file: str) -> 'StaticAEDIndex':
        """
        Load AED points from a JSON array of ``{latitude, longitude, description, ...}``

        A missing file yields an empty index.
        """
        path = Path(data_file)
        if not path.exists():
            logging.getLogger(__name__).warning(f"AED data file {path} not found, index is empty")
            return cls()

        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        if isinstance(data, dict):
            data = data.get('aeds', [])

        index = cls(data)
        index.logger.info(f"Loaded {len(index.points)} AED locations from {path}")
        return index

    def add_point(self, point: Dict[str, Any]) -> bool:
        if not (is_finite_coordinate(point.get('latitude')) and
                is_finite_coordinate(point.get('longitude'))):
            self.logger.warning(f"Skipping AED entry with invalid coordinates: {point}")
            return False
        self.points.append(AEDLocation.from_dict(point))
        return True

    async def find_nearest(self, latitude: float, longitude: float, k: int) -> List[AEDLocation]:
        origin = {'latitude': latitude, 'longitude': longitude}
        ranked = []
        for point in self.points:
            ranked.append((distance(origin, point), point))
        ranked.sort(key=lambda item: item[0])

        results = []
        for meters, point in ranked[:max(0, k)]:
            results.append(AEDLocation(
                latitude=point.latitude,
                longitude=point.longitude,
                description=point.description,
                distance=meters,
                extra=dict(point.extra)
            ))
        # yield to the loop like a remote index would
        await asyncio.sleep(0)
        return results
