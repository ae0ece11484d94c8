"""FastAPI Backend - Grounded Itinerary Planner"""
import math

# Load .env before anything else
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import List, Optional, Dict, Any, Union

from settings import ConfigurationError, configure_logging
from agents.GeocodeAgent import GeocodeError, geocode, reverse_geocode
from agents.planning_agent import planning_agent
from agents.resilience import RateLimitExceeded, RetryExhausted

configure_logging()

# FastAPI app
app = FastAPI(
    title="Grounded Itinerary API",
    description="Multi-stop itineraries grounded in live place data",
    version="1.0.0"
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Pydantic models
class ItineraryRequest(BaseModel):
    start_location: str = ""
    departure_datetime: str = ""
    cities: Union[str, List[str]] = []
    preferences: str = ""

class LiveLookupRequest(BaseModel):
    query: str
    context: Optional[Dict[str, Any]] = None

# Error mapping
@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})

@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": str(exc), "retry_after": round(exc.retry_after, 3)},
        headers={"Retry-After": str(max(1, math.ceil(exc.retry_after)))},
    )

@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=500, content={"detail": str(exc)})

@app.exception_handler(RetryExhausted)
async def retry_exhausted_handler(request: Request, exc: RetryExhausted):
    return JSONResponse(status_code=502, content={"detail": f"Upstream service failed: {exc}"})

@app.exception_handler(GeocodeError)
async def geocode_error_handler(request: Request, exc: GeocodeError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})

# Routes
@app.get("/health")
def health():
    return {"status": "ok"}

@app.post("/itinerary")
def generate_itinerary(body: ItineraryRequest):
    return planning_agent.generate_itinerary(body.model_dump())

@app.post("/live-lookup")
def live_lookup(body: LiveLookupRequest):
    return planning_agent.live_lookup(body.query, body.context)

@app.get("/geocode")
def geocode_location(q: str = Query(..., min_length=1)):
    point = geocode(q)
    if point is None:
        raise HTTPException(status_code=404, detail="Location not found")
    return point.to_dict()

@app.get("/reverse-geocode")
def reverse_geocode_location(lat: float = Query(..., ge=-90, le=90),
                             lon: float = Query(..., ge=-180, le=180)):
    point = reverse_geocode(lat, lon)
    if point is None:
        raise HTTPException(status_code=404, detail="Location not found")
    return point.to_dict()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
