import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fulfillment import config
from fulfillment.errors import FulfillmentError
from fulfillment.routers import deliveries, delivery_settings, earnings, health, orders, payouts, stock


logger = logging.getLogger(__name__)

app = FastAPI(title="Fulfillment API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FulfillmentError)
def handle_fulfillment_error(request: Request, exc: FulfillmentError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


app.include_router(health.router)
app.include_router(stock.router)
app.include_router(orders.router)
app.include_router(deliveries.router)
app.include_router(earnings.router)
app.include_router(payouts.router)
app.include_router(delivery_settings.router)


@app.get("/")
def root():
    return {"status": "ok"}
