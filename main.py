import json
import logging
import sys
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

import config
from database import get_store
from errors import NotFound, RatingsError
from queries import compose_rating_query, compose_restaurant_query
from ratings import submit_rating_async
from schemas import RESTAURANTS, Filters, Rating, validate_restaurant_id
from seed import seed_restaurants
from store import DocumentStore

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Restaurant Ratings API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RatingsError)
async def ratings_error_handler(request: Request, exc: RatingsError):
    if exc.retryable:
        logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.model_dump())


@app.get("/")
def root():
    return {"message": "Restaurant Ratings API running"}


@app.get("/test")
def test_database(store: DocumentStore = Depends(get_store)):
    response = {
        "backend": "✅ Running",
        "store": type(store).__name__,
        "database_name": config.DATABASE_NAME if config.DOCUMENT_STORE == "mongo" else None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["collections"] = store.list_collections()[:10]
        response["connection_status"] = "Connected"
    except Exception as e:
        response["connection_status"] = f"❌ Error: {str(e)[:80]}"
    return response


@app.post("/api/seed")
def seed_demo(count: int = Query(10, ge=1, le=100), store: DocumentStore = Depends(get_store)):
    if store.fetch(compose_restaurant_query(limit=1)):
        return {"status": "ok", "message": "Already seeded"}
    ids = seed_restaurants(store, count)
    return {"status": "ok", "inserted": ids}


@app.get("/api/restaurants")
def list_restaurants(filters: Filters = Depends(), store: DocumentStore = Depends(get_store)):
    return store.fetch(compose_restaurant_query(filters))


@app.get("/api/restaurants/{restaurant_id}")
def get_restaurant(restaurant_id: str, store: DocumentStore = Depends(get_store)):
    validate_restaurant_id(restaurant_id)
    doc = store.get(RESTAURANTS, restaurant_id)
    if doc is None:
        raise NotFound(f"Restaurant {restaurant_id} not found")
    ratings = store.fetch(compose_rating_query(restaurant_id))
    return {"restaurant": doc, "ratings": ratings}


@app.get("/api/restaurants/{restaurant_id}/ratings")
def list_ratings(restaurant_id: str, store: DocumentStore = Depends(get_store)):
    validate_restaurant_id(restaurant_id)
    return store.fetch(compose_rating_query(restaurant_id))


class RatingCreate(BaseModel):
    user_id: str
    user_name: str = ""
    user_photo: Optional[str] = None
    rating: float
    text: str = ""


@app.post("/api/restaurants/{restaurant_id}/ratings")
async def add_rating(restaurant_id: str, body: RatingCreate, store: DocumentStore = Depends(get_store)):
    rating = Rating(**body.model_dump())
    result = await submit_rating_async(store, restaurant_id, rating)
    return {
        "status": "ok",
        "rating_id": result.rating_id,
        "num_ratings": result.num_ratings,
        "avg_rating": result.avg_rating,
    }


def _event(snapshot: List[dict]) -> str:
    return f"data: {json.dumps(jsonable_encoder(snapshot))}\n\n"


@app.get("/sse/restaurants")
async def stream_restaurants(request: Request, filters: Filters = Depends(),
                             store: DocumentStore = Depends(get_store)):
    """
    Stream the filtered restaurant list as Server-Sent Events.

    One event per snapshot: the full result list each time it changes.
    The subscription is cancelled when the client goes away.
    """
    # the Mongo store opens a change stream and reads the first snapshot here
    subscription = await run_in_threadpool(store.query, compose_restaurant_query(filters))

    async def generate():
        try:
            while not subscription.cancelled:
                if await request.is_disconnected():
                    break
                snapshot = await run_in_threadpool(subscription.poll, 1.0)
                if snapshot is not None:
                    yield _event(snapshot)
        finally:
            subscription.cancel()
            logger.debug("SSE: restaurant subscription cancelled")

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
