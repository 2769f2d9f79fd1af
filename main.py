# main.py
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parent
sys.path.append(str(ROOT_DIR))

load_dotenv()

import models  # noqa: E402,F401  (registers tables on Base)
from database import engine, Base  # noqa: E402
from deps import shutdown_dispatcher  # noqa: E402
from errors import FulfillmentError  # noqa: E402
from routes import orders, webhooks, failed_webhooks, rider_delivery  # noqa: E402
from utils import get_logger  # noqa: E402

logger = get_logger("app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    shutdown_dispatcher()


app = FastAPI(title="Order Fulfillment", lifespan=lifespan)

Base.metadata.create_all(bind=engine)


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    if exc.status_code >= 500:
        logger.error("%s %s -> %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder({"error": "Invalid request", "code": "validation_error", "details": exc.errors()}),
    )


@app.get("/health", include_in_schema=False)
def health():
    return {"status": "ok"}


# Routers
app.include_router(webhooks.router)
app.include_router(failed_webhooks.router)
app.include_router(orders.router)
app.include_router(rider_delivery.router)
app.include_router(rider_delivery.page_router)
