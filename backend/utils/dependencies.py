from fastapi import Depends

from database import get_db
from utils.fulfillment_service import FulfillmentService
from utils.gateway import get_gateway


def get_service(db=Depends(get_db), gateway=Depends(get_gateway)) -> FulfillmentService:
    return FulfillmentService(db, gateway)
