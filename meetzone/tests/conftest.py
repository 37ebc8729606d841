import pytest

from .helpers import MV, OAKLAND, SF, place, square_around


@pytest.fixture()
def overlapping_boundaries():
    return {
        SF.point: square_around(SF.longitude, SF.latitude, 0.3),
        MV.point: square_around(MV.longitude, MV.latitude, 0.3),
        OAKLAND.point: square_around(OAKLAND.longitude, OAKLAND.latitude, 0.3),
    }


@pytest.fixture()
def bay_area_places():
    return {
        'city': [place("Oakland", "Oakland", "US", "city"), place("Palo Alto", "Palo Alto", "US", "city")],
        'town': [place("Atherton", "Atherton", "US", "town")],
        'village': [],
        'populated place': [place("Oakland", "Oakland", "US", "populated place", lat=37.81)],
    }
