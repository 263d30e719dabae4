from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from bookstore.core.config import settings
from bookstore.core.database import connect_to_mongo, close_mongo_connection, get_store
from bookstore.api.routes import cart, notifications, wishlist
from bookstore.services.container import build_services, get_services, set_services

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Backend API for bookstore wishlists and carts with price and availability monitoring",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    logger.info("Starting up bookstore backend...")
    await connect_to_mongo()
    services = build_services(get_store())
    set_services(services)
    services.monitor.start()
    logger.info("Bookstore backend started successfully")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up services on shutdown."""
    logger.info("Shutting down bookstore backend...")
    services = get_services()
    if services:
        services.monitor.stop()
        await services.monitor.scheduler.shutdown()
        set_services(None)
    await close_mongo_connection()
    logger.info("Bookstore backend shut down successfully")


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    services = get_services()
    return {
        "status": "healthy",
        "service": "bookstore-backend",
        "version": "1.0.0",
        "store_online": services.connectivity.is_online if services else False,
        "price_monitor": services.monitor.state.value if services else None
    }


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.PROJECT_NAME,
        "version": "1.0.0",
        "description": "Bookstore Monitor API",
        "docs": "/docs",
        "health": "/health"
    }


# Include routers
app.include_router(wishlist.router, prefix=f"{settings.API_V1_PREFIX}/wishlist", tags=["Wishlist"])
app.include_router(cart.router, prefix=f"{settings.API_V1_PREFIX}/cart", tags=["Cart"])
app.include_router(
    notifications.router,
    prefix=f"{settings.API_V1_PREFIX}/notifications",
    tags=["Notifications"]
)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
