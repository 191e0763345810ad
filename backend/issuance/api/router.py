from fastapi import APIRouter

from issuance.api.routes import auth, contracts, installments, proposals, public_proposals

api_router = APIRouter()
api_router.include_router(auth.router)
api_router.include_router(proposals.router)
api_router.include_router(public_proposals.router)
api_router.include_router(contracts.router)
api_router.include_router(installments.router)
