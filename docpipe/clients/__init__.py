from docpipe.clients.base import (
    OCRClient,
    ResultWriter,
    SentimentClient,
    SentimentResult,
    StoredObject,
)

__all__ = [
    "OCRClient",
    "ResultWriter",
    "SentimentClient",
    "SentimentResult",
    "StoredObject",
    # TextractOCRClient, ComprehendSentimentClient: import from docpipe.clients.textract / .comprehend (requires boto3)
]
