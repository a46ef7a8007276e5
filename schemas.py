"""
Database Schemas for the Restaurant Ratings API

Each Pydantic model describes one kind of document in the document store.
Restaurants live in the "restaurants" collection; each restaurant owns a
"ratings" sub-collection (path: restaurants/{id}/ratings).
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

import config
from errors import InvalidArgument

RESTAURANTS = "restaurants"
RATINGS = "ratings"

FIELD_NAME = "name"
FIELD_CITY = "city"
FIELD_CATEGORY = "category"
FIELD_PRICE = "price"
FIELD_NUM_RATINGS = "num_ratings"
FIELD_AVG_RATING = "avg_rating"
FIELD_TIMESTAMP = "timestamp"


def ratings_path(restaurant_id: str) -> str:
    return f"{RESTAURANTS}/{restaurant_id}/{RATINGS}"


class Restaurant(BaseModel):
    name: str = Field(..., min_length=1, description="Restaurant name")
    city: str = Field(..., description="City name")
    category: str = Field(..., description="Cuisine category e.g. 'Italian'")
    price: int = Field(1, ge=1, le=3, description="1=cheap, 3=expensive")
    photo: Optional[str] = Field(None, description="Hero photo URL")
    num_ratings: int = Field(0, ge=0, description="Number of committed ratings")
    avg_rating: float = Field(0.0, ge=0, description="Mean of committed ratings")


class Rating(BaseModel):
    """
    One user's rating of a restaurant.

    The value is deliberately unbounded here; range checks happen in
    validate_rating so the engine can reject bad input with InvalidArgument
    before it talks to the store.
    """
    user_id: str = Field(..., description="Id of the submitting user")
    user_name: str = Field("", description="Display name of the submitting user")
    user_photo: Optional[str] = Field(None, description="Avatar URL")
    rating: float = Field(..., description="Rating value, 0 to MAX_RATING")
    text: str = Field("", description="Free-form comment")
    timestamp: Optional[datetime] = Field(None, description="Assigned by the store on commit")


class SortField(str, Enum):
    name = "name"
    price = "price"
    rating = "rating"


class SortDirection(str, Enum):
    asc = "asc"
    desc = "desc"


# Sort choices map onto stored document fields
SORT_FIELDS = {
    SortField.name: FIELD_NAME,
    SortField.price: FIELD_PRICE,
    SortField.rating: FIELD_AVG_RATING,
}

DEFAULT_DIRECTIONS = {
    SortField.name: SortDirection.asc,
    SortField.price: SortDirection.asc,
    SortField.rating: SortDirection.desc,
}


class Filters(BaseModel):
    """User-chosen constraints for the restaurant list. Every field is optional."""
    category: Optional[str] = None
    city: Optional[str] = None
    price: Optional[int] = None
    sort_by: Optional[SortField] = None
    sort_direction: Optional[SortDirection] = None


def validate_restaurant_id(restaurant_id) -> str:
    if not isinstance(restaurant_id, str) or not restaurant_id.strip():
        raise InvalidArgument("Restaurant id must be a non-empty string")
    if "/" in restaurant_id:
        raise InvalidArgument(f"Malformed restaurant id: {restaurant_id!r}")
    return restaurant_id


def validate_rating(rating: Rating) -> Rating:
    if not rating.user_id or not rating.user_id.strip():
        raise InvalidArgument("Rating author is missing", hint="Pass the signed-in user's id")
    if not 0.0 <= rating.rating <= config.MAX_RATING:
        raise InvalidArgument(
            f"Rating {rating.rating} is outside 0..{config.MAX_RATING:g}")
    return rating
