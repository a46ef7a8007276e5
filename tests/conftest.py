import pytest

from schemas import RESTAURANTS
from store import MemoryDocumentStore


@pytest.fixture
def store():
    """Fresh in-memory store without retry backoff"""
    return MemoryDocumentStore(backoff=0)


@pytest.fixture
def restaurant_id(store):
    """A restaurant that already has two ratings averaging 4.0"""
    return store.add(RESTAURANTS, {
        "name": "Sam's Diner",
        "city": "Austin",
        "category": "Burgers",
        "price": 2,
        "photo": None,
        "num_ratings": 2,
        "avg_rating": 4.0,
    })
