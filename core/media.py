# core/media.py
from __future__ import annotations
from typing import Dict, Any, Optional
import hashlib, os, uuid
from google.cloud import storage

def store_slip(kind: str, ref_id: str, content: bytes, content_type: Optional[str]) -> Optional[Dict[str, Any]]:
  """
  Store an uploaded slip image under SLIP_BUCKET. Returns dict with blob path, URL and sha256,
  or None when no bucket is configured (local dev).
  """
  bucket_name = os.getenv("SLIP_BUCKET")
  if not bucket_name:
    return None
  sha = hashlib.sha256(content).hexdigest()
  bucket = storage.Client().bucket(bucket_name)
  ext = guess_ext_from_ctype(content_type)
  blob_name = f"slips/{kind}/{ref_id}/{uuid.uuid4().hex}{ext}"
  blob = bucket.blob(blob_name)
  blob.upload_from_string(content, content_type=content_type or "application/octet-stream")
  public_base = os.getenv("SLIP_PUBLIC_BASE", f"https://storage.googleapis.com/{bucket_name}")
  return {"bucket": bucket_name, "name": blob_name, "url": f"{public_base}/{blob_name}", "sha256": sha, "content_type": content_type}

def guess_ext_from_ctype(ctype: Optional[str]) -> str:
  ctype = (ctype or "").lower()
  if "jpeg" in ctype or "jpg" in ctype: return ".jpg"
  if "png" in ctype: return ".png"
  if "webp" in ctype: return ".webp"
  if "heic" in ctype: return ".heic"
  return ""
