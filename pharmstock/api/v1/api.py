from fastapi import APIRouter
from pharmstock.api.v1.requisitions import routes as requisitions
from pharmstock.api.v1.stock import routes as stock

api_router = APIRouter()
api_router.include_router(requisitions.router, prefix="/requisitions", tags=["requisitions"])
api_router.include_router(stock.router, prefix="/stock", tags=["stock"])
