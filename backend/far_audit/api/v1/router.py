from fastapi import APIRouter

from far_audit.api.v1 import admin, docs, gl, requirements, review, rules

api_router = APIRouter()

api_router.include_router(gl.router, prefix="/gl", tags=["gl"])
api_router.include_router(docs.router, prefix="/docs", tags=["documents"])
api_router.include_router(review.router, prefix="/llm-review", tags=["review"])
api_router.include_router(requirements.router, prefix="/requirements", tags=["requirements"])
api_router.include_router(rules.router, prefix="/rules", tags=["rules"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
