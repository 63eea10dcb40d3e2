from pydantic import BaseModel


class UploadRequest(BaseModel):
    original_name: str
    content_type: str = "application/octet-stream"
    category: str = "documents"  # documents|photos


class UploadResponse(BaseModel):
    key: str
    upload_url: str
    uri: str
    expires_in: int
