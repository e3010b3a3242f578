"""FastAPI dependencies."""
from fastapi import Request

from far_audit.services.compliance import ComplianceService


def get_compliance_service(request: Request) -> ComplianceService:
    """The process-wide service created in the app lifespan."""
    return request.app.state.compliance
