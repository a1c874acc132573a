import argparse
import logging
import sys

import uvicorn
from fastapi import FastAPI, File, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
from model import ONNXModel, PredictionError, PredictionService, load_labels

logger = logging.getLogger(__name__)


def create_app(service: PredictionService) -> FastAPI:
    """Build the FastAPI app around an already loaded prediction service."""
    app = FastAPI(title="Image Classifier")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_methods=config.ALLOWED_METHODS,
        allow_headers=config.ALLOWED_HEADERS,
    )

    @app.post("/predict")
    async def predict(image: UploadFile = File(...)):
        try:
            contents = await image.read()
            result = await run_in_threadpool(service.predict, contents)
        except Exception as e:
            logger.error(f"Error during prediction: {e}")
            return JSONResponse(
                status_code=500,
                content={"error": "An error occurred during prediction", "details": str(e)},
            )
        return result.to_dict()

    @app.get("/health")
    async def health():
        info = service.get_service_info()
        return {
            "status": "healthy",
            "model_info": info["model_info"],
            "num_classes": info["num_classes"],
        }

    return app


def build_service(model_path: str = config.MODEL_PATH,
                  labels_path: str = config.LABELS_PATH) -> PredictionService:
    """Load the model and label table. Raises on any startup failure."""
    model = ONNXModel(model_path)
    labels = load_labels(labels_path)
    return PredictionService(model, labels)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Image classification prediction server")
    parser.add_argument("--model", default=config.MODEL_PATH, help="Path to the ONNX model")
    parser.add_argument("--labels", default=config.LABELS_PATH, help="CSV file with a Label column")
    parser.add_argument("--host", default=config.HOST)
    parser.add_argument("--port", type=int, default=config.PORT)
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-file", default=config.LOG_FILE, help="Empty string disables file logging")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    config.setup_logging(args.log_level, args.log_file or None)

    try:
        service = build_service(args.model, args.labels)
    except PredictionError as e:
        logger.error(f"Error during server startup: {e}")
        sys.exit(1)

    app = create_app(service)
    logger.info(f"Server running at http://localhost:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
