from __future__ import annotations

import logging
import os
from uuid import uuid4

from fastapi import UploadFile

from taskboard.config import settings
from taskboard.errors import PayloadTooLarge, ValidationFailed

logger = logging.getLogger(__name__)

AVATAR_TYPES = {"image/png": ".png", "image/jpeg": ".jpg", "image/webp": ".webp", "image/gif": ".gif"}


async def read_limited(file: UploadFile, *, limit: int, what: str) -> bytes:
  data = await file.read(int(limit) + 1)
  if len(data) > int(limit):
    raise PayloadTooLarge(f"{what} too large", limitBytes=int(limit))
  if not data:
    raise ValidationFailed(f"{what} is empty")
  return data


def avatar_extension(content_type: str | None) -> str:
  ext = AVATAR_TYPES.get((content_type or "").lower())
  if not ext:
    raise ValidationFailed("Unsupported file type")
  return ext


def store(subdir: str, data: bytes, *, ext: str = "") -> str:
  out_dir = os.path.join(settings.upload_dir, subdir)
  os.makedirs(out_dir, exist_ok=True)
  out_path = os.path.join(out_dir, f"{uuid4().hex}{ext}")
  with open(out_path, "wb") as f:
    f.write(data)
  return out_path


def remove(path: str | None) -> None:
  if not path:
    return
  try:
    os.remove(path)
  except FileNotFoundError:
    return
  except OSError:
    logger.warning("could not remove upload %s", path, exc_info=True)
