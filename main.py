# Workflow Automation Pro - Main Application Entry Point

# Load environment variables FIRST (before any other imports that use config)
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from config import AppConfig
from database.simple_connection import db as simple_db_instance
from api.routes.auth_routes import router as auth_router
from api.routes.organization_routes import router as organization_router
from api.routes.integration_routes import router as integration_router
from api.routes.contacts_routes import router as contacts_router
from api.routes.sales_routes import router as sales_router
from api.routes.properties_routes import router as properties_router
from api.routes.commission_routes import router as commission_router
from api.routes.chatbot_routes import router as chatbot_router
from api.routes.receipt_routes import router as receipt_router
from api.routes.billing_routes import router as billing_router
from api.routes.webhook_routes import router as webhook_router
from api.security.middleware import RequestLoggingMiddleware
from api.services.chatbot_engine import engine_cache_stats

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

APP_NAME = "Workflow Automation Pro"
APP_VERSION = "1.0.0"


# Lifespan event handler
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown events"""
    logger.info(f"🚀 {APP_NAME} starting up...")

    logger.info("🔧 Configuration Status:")
    logger.info(f"   🔑 GHL_CLIENT_ID: {'✅ Loaded' if AppConfig.GHL_CLIENT_ID else '❌ Missing'}")
    logger.info(f"   🔐 GHL_WEBHOOK_SECRET: {'✅ Loaded' if AppConfig.GHL_WEBHOOK_SECRET else '❌ Missing'}")
    logger.info(f"   🤖 ANTHROPIC_API_KEY: {'✅ Loaded' if AppConfig.ANTHROPIC_API_KEY else '❌ Missing'}")
    logger.info(f"   💳 STRIPE_SECRET_KEY: {'✅ Loaded' if AppConfig.STRIPE_SECRET_KEY else '❌ Missing'}")
    logger.info(f"   📧 SMTP_HOST: {'✅ Loaded' if AppConfig.SMTP_HOST else '❌ Missing'}")

    if AppConfig.validate_config():
        logger.info("✅ All required configuration loaded successfully")
    else:
        logger.error("❌ Configuration validation failed - check environment variables")

    simple_db_instance.init_database()
    logger.info("✅ API documentation available at /docs")

    yield

    logger.info(f"🛑 {APP_NAME} shutting down...")


app = FastAPI(
    title=APP_NAME,
    description="Multi-tenant GoHighLevel automation: sales, commissions, receipts and chatbot workflows",
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=AppConfig.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(auth_router)
app.include_router(organization_router)
app.include_router(integration_router)
app.include_router(contacts_router)
app.include_router(sales_router)
app.include_router(properties_router)
app.include_router(commission_router)
app.include_router(chatbot_router)
app.include_router(receipt_router)
app.include_router(billing_router)
app.include_router(webhook_router)


@app.get("/health")
async def health_check():
    """Global health check"""
    database_stats = simple_db_instance.get_stats()
    return {
        "status": "healthy" if database_stats.get("database_healthy") else "degraded",
        "service": APP_NAME,
        "version": APP_VERSION,
        "environment": AppConfig.ENVIRONMENT,
        "database": database_stats,
        "engine_cache": engine_cache_stats(),
        "features": [
            "GoHighLevel OAuth and MCP integration",
            "Contact sync",
            "Invoices, estimates and payments",
            "Commission tracking and payouts",
            "AI receipt processing",
            "Chatbot workflows",
            "Stripe billing"
        ]
    }


if __name__ == "__main__":
    import uvicorn
    import signal
    import sys

    def signal_handler(signum, frame):
        logger.info(f"🛑 {APP_NAME} shutting down...")
        sys.exit(0)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        uvicorn.run(app, host=AppConfig.HOST, port=AppConfig.PORT)
    except KeyboardInterrupt:
        logger.info(f"🛑 {APP_NAME} shutting down...")
    except Exception as e:
        logger.error(f"❌ Application crashed: {e}")
