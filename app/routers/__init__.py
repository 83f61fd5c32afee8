"""
API routers package
"""

from app.routers.certificates import router as certificates_router, registry_router
