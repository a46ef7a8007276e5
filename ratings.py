"""
Rating submission: commit a new rating and update the restaurant's aggregate
(num_ratings, avg_rating) in one transaction.

The running average is recomputed from the stored aggregate rather than from
the full ratings list, so the read-modify-write on the restaurant document is
the only point of contention. The store's transaction retry is what keeps
concurrent submissions from losing updates.
"""
import logging
from dataclasses import dataclass

from starlette.concurrency import run_in_threadpool

from errors import NotFound
from schemas import (
    FIELD_AVG_RATING,
    FIELD_NUM_RATINGS,
    FIELD_TIMESTAMP,
    RESTAURANTS,
    Rating,
    ratings_path,
    validate_rating,
    validate_restaurant_id,
)
from store import SERVER_TIMESTAMP, DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class RatingResult:
    rating_id: str
    num_ratings: int
    avg_rating: float


def next_aggregate(num_ratings: int, avg_rating: float, value: float):
    """Fold one more rating into a (count, mean) pair."""
    new_num_ratings = num_ratings + 1
    old_total = avg_rating * num_ratings
    return new_num_ratings, (old_total + value) / new_num_ratings


def submit_rating(store: DocumentStore, restaurant_id: str, rating: Rating) -> RatingResult:
    """
    Add a rating to a restaurant.

    Raises:
        InvalidArgument: bad restaurant id, out-of-range value or no author.
            Nothing is sent to the store in that case.
        NotFound: the restaurant does not exist. No rating is written.
        TransientStoreFailure: the transaction kept conflicting or the store
            was unreachable for the whole retry budget. When the hint says to
            check before resubmitting, the commit may have been applied.
    """
    validate_restaurant_id(restaurant_id)
    validate_rating(rating)

    collection = ratings_path(restaurant_id)
    rating_id = store.new_document_id(collection)

    rating_doc = rating.model_dump(exclude={"timestamp"})
    rating_doc[FIELD_TIMESTAMP] = SERVER_TIMESTAMP

    def update(txn) -> RatingResult:
        restaurant = txn.get(RESTAURANTS, restaurant_id)
        if restaurant is None:
            raise NotFound(f"Restaurant {restaurant_id} not found")

        num_ratings, avg_rating = next_aggregate(
            int(restaurant.get(FIELD_NUM_RATINGS, 0)),
            float(restaurant.get(FIELD_AVG_RATING, 0.0)),
            rating.rating,
        )

        txn.update(RESTAURANTS, restaurant_id, {
            FIELD_NUM_RATINGS: num_ratings,
            FIELD_AVG_RATING: avg_rating,
        })
        txn.set(collection, rating_id, rating_doc)
        return RatingResult(rating_id, num_ratings, avg_rating)

    result = store.run_transaction(update)
    logger.info(f"Rating {rating_id} added to {restaurant_id}: "
                f"{result.num_ratings} ratings, avg {result.avg_rating:.3f}")
    return result


async def submit_rating_async(store: DocumentStore, restaurant_id: str, rating: Rating) -> RatingResult:
    """Same as submit_rating, run on the threadpool so the event loop stays free."""
    return await run_in_threadpool(submit_rating, store, restaurant_id, rating)
