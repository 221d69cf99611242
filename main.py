# backend/main.py
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from myopia_api import config
from myopia_api.database import init_db
from myopia_api.errors import register_exception_handlers
from myopia_api.logging_config import configure_logging

from myopia_api import auth as auth_router
from myopia_api import patients as patients_router
from myopia_api import retinal_images as retinal_images_router
from myopia_api import diagnoses as diagnoses_router
from myopia_api import recommendations as recommendations_router

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Database ready; uploads served from %s", os.path.abspath(config.UPLOAD_DIR))
    yield


app = FastAPI(title="Myopia Diagnosis API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
)

register_exception_handlers(app)

app.include_router(auth_router.router)
app.include_router(patients_router.router)
app.include_router(retinal_images_router.router)
app.include_router(diagnoses_router.router)
app.include_router(recommendations_router.router)

os.makedirs(os.path.join(config.UPLOAD_DIR, "input"), exist_ok=True)
app.mount("/uploads", StaticFiles(directory=config.UPLOAD_DIR), name="uploads")


@app.get("/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "3000")))
