# tracklock/schemas/stream.py
from typing import List

from pydantic import BaseModel, Field

# Wire names are camelCase for the web player; fields stay snake_case in Python.

class SegmentOut(BaseModel):
    index: int
    start: int
    end: int
    token: str

    class Config:
        from_attributes = True

class ManifestOut(BaseModel):
    resource_id: str = Field(serialization_alias="resourceId")
    total_size: int = Field(serialization_alias="totalSize")
    segment_size: int = Field(serialization_alias="segmentSize")
    segments: List[SegmentOut]
    expires_at: int = Field(serialization_alias="expiresAt")

    class Config:
        from_attributes = True

class TokenGrantOut(BaseModel):
    token: str
    nonce: str
    key_material: str = Field(serialization_alias="keyMaterial")

class PreloadGrantOut(BaseModel):
    token: str
    expires_in: int = Field(serialization_alias="expiresIn", description="Seconds until the grant expires")

class SpectrumOut(BaseModel):
    fft_size: int = Field(serialization_alias="fftSize")
    bin_count: int = Field(serialization_alias="binCount")
    data: List[int]
