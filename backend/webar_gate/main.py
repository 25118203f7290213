from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from webar_gate.api.locations import router as locations_router
from webar_gate.api.content import router as content_router
from webar_gate.api.registrations import router as registrations_router
from webar_gate.db import Base, engine
from webar_gate.models.document import Document  # noqa: F401  (import ensures table is registered)
from webar_gate.core.logging_setup import configure_logging


configure_logging()

app = FastAPI(title="WebAR gate")

# The AR bundle is served from a static host
origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Create DB tables on startup
Base.metadata.create_all(bind=engine)

app.include_router(locations_router)
app.include_router(content_router)
app.include_router(registrations_router)


@app.get("/")
def root():
    return {"message": "WebAR gate is running"}
