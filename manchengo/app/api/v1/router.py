from fastapi import APIRouter

from manchengo.app.api.v1.endpoints.health import router as health_router
from manchengo.app.api.v1.endpoints.suppliers import router as suppliers_router
from manchengo.app.api.v1.endpoints.products import router as products_router
from manchengo.app.api.v1.endpoints.recipes import router as recipes_router
from manchengo.app.api.v1.endpoints.stock import router as stock_router
from manchengo.app.api.v1.endpoints.receptions import router as receptions_router
from manchengo.app.api.v1.endpoints.demandes import router as demandes_router
from manchengo.app.api.v1.endpoints.purchase_orders import router as purchase_orders_router
from manchengo.app.api.v1.endpoints.appro import router as appro_router
from manchengo.app.api.v1.endpoints.production import router as production_router
from manchengo.app.api.v1.endpoints.alerts import router as alerts_router
from manchengo.app.api.v1.endpoints.audit import router as audit_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(suppliers_router, tags=["suppliers"])
router.include_router(products_router, tags=["products"])
router.include_router(recipes_router, tags=["recipes"])
router.include_router(stock_router, tags=["stock"])
router.include_router(receptions_router, tags=["receptions"])
router.include_router(demandes_router, tags=["demandes"])
router.include_router(purchase_orders_router, tags=["purchase_orders"])
router.include_router(appro_router, tags=["appro"])
router.include_router(production_router, tags=["production"])
router.include_router(alerts_router, tags=["alerts"])
router.include_router(audit_router, tags=["audit"])
