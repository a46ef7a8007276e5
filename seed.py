"""Random demo restaurants for an empty directory."""
import logging
import random
from typing import List, Optional

from schemas import RESTAURANTS, Restaurant
from store import DocumentStore

logger = logging.getLogger(__name__)

NAME_FIRST_WORDS = ["Foo", "Bar", "Baz", "Qux", "Fire", "Sam's", "World Famous", "Google", "The Best"]
NAME_SECOND_WORDS = ["Restaurant", "Cafe", "Spot", "Eatin' Place", "Eatery", "Drive Thru", "Diner"]

CITIES = [
    "Albuquerque", "Arlington", "Atlanta", "Austin", "Baltimore", "Boston", "Charlotte",
    "Chicago", "Cleveland", "Colorado Springs", "Columbus", "Dallas", "Denver", "Detroit",
    "El Paso", "Fort Worth", "Fresno", "Houston", "Indianapolis", "Jacksonville",
    "Kansas City", "Las Vegas", "Long Island", "Los Angeles", "Louisville", "Memphis",
    "Mesa", "Miami", "Milwaukee", "Nashville", "New York", "Oakland", "Oklahoma",
    "Omaha", "Philadelphia", "Phoenix", "Portland", "Raleigh", "Sacramento",
    "San Antonio", "San Diego", "San Francisco", "San Jose", "Tucson", "Tulsa",
    "Virginia Beach", "Washington",
]

CATEGORIES = [
    "Brunch", "Burgers", "Coffee", "Deli", "Dim Sum", "Indian", "Italian",
    "Mediterranean", "Mexican", "Pizza", "Ramen", "Sushi",
]

PHOTO_URL = "https://storage.googleapis.com/firestorequickstarts.appspot.com/food_{}.png"
MAX_PHOTO = 22


def random_restaurant(rng: Optional[random.Random] = None) -> Restaurant:
    rng = rng or random.Random()
    # aggregate is built from actual draws so avg_rating stays a true mean
    ratings = [rng.randint(1, 5) for _ in range(rng.randint(0, 10))]
    avg = sum(ratings) / len(ratings) if ratings else 0.0
    return Restaurant(
        name=f"{rng.choice(NAME_FIRST_WORDS)} {rng.choice(NAME_SECOND_WORDS)}",
        city=rng.choice(CITIES),
        category=rng.choice(CATEGORIES),
        price=rng.randint(1, 3),
        photo=PHOTO_URL.format(rng.randint(1, MAX_PHOTO)),
        num_ratings=len(ratings),
        avg_rating=avg,
    )


def seed_restaurants(store: DocumentStore, count: int = 10,
                     rng: Optional[random.Random] = None) -> List[str]:
    rng = rng or random.Random()
    ids = [store.add(RESTAURANTS, random_restaurant(rng).model_dump()) for _ in range(count)]
    logger.info(f"Seeded {len(ids)} restaurants")
    return ids
