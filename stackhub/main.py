from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from stackhub.logging_setup import setup_logging
from stackhub.routers.stack_jobs import router as stack_router


def create_app() -> FastAPI:
	setup_logging()
	app = FastAPI(title="StackHub - Align & Fuse API", version="0.1.0")

	# CORS (adjust origins in production)
	app.add_middleware(
		CORSMiddleware,
		allow_origins=["*"],
		allow_credentials=False,
		allow_methods=["*"],
		allow_headers=["*"],
	)

	# Routers
	app.include_router(stack_router)

	return app


app = create_app()


if __name__ == "__main__":
	# Local dev server: uvicorn stackhub.main:app --reload
	import uvicorn

	uvicorn.run("stackhub.main:app", host="0.0.0.0", port=8000, reload=True)
