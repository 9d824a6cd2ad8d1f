import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Serialized ONNX graph, fetched once at startup
MODEL_URL = os.getenv("MODEL_URL")  # required, no default
MODEL_FETCH_TIMEOUT = float(os.getenv("MODEL_FETCH_TIMEOUT", 60))
MODEL_INPUT_SIZE = (224, 224)  # width, height

# Document store
CREDENTIALS_PATH = os.getenv("CREDENTIALS_PATH", "key.json")
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
PREDICTIONS_COLLECTION = os.getenv("PREDICTIONS_COLLECTION", "predictions")

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", 1_000_000))
MULTIPART_OVERHEAD_BYTES = 64 * 1024  # boundaries + part headers allowed on top of the file
UPLOAD_CHUNK_SIZE = 64 * 1024

PREDICT_TIMEOUT = float(os.getenv("PREDICT_TIMEOUT", 30))
MAX_CONCURRENT_PREDICTIONS = int(os.getenv("MAX_CONCURRENT_PREDICTIONS", 0))  # 0 = unbounded
