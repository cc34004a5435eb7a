import logging
import os
import uuid
import shutil
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError
import aiofiles

from config import Config

logger = logging.getLogger(__name__)

# Allowed certificate types
ALLOWED_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.pdf'}
ALLOWED_MIME_TYPES = {'image/jpeg', 'image/jpg', 'image/png', 'application/pdf'}
MAX_FILE_SIZE = 5 * 1024 * 1024  # 5MB in bytes
PDF_MAGIC = b'%PDF-'

# Storage directories; certificates live under <user_id>/ folders
UPLOAD_DIR = Path(Config.UPLOAD_DIR)
CERTIFICATE_DIR = UPLOAD_DIR / "certificates"
TEMP_DIR = UPLOAD_DIR / "temp"

MEDIA_TYPES = {
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.png': 'image/png',
    '.pdf': 'application/pdf',
}


def ensure_directories():
    """Create the upload, certificate and temp folders."""
    for directory in [UPLOAD_DIR, CERTIFICATE_DIR, TEMP_DIR]:
        directory.mkdir(parents=True, exist_ok=True)


def sanitize_filename(filename: str) -> str:
    """Strip directories and unusual characters from a client-supplied name."""
    filename = os.path.basename(filename)
    # Keep only alphanumeric, dots, hyphens, and underscores
    filename = ''.join(c for c in filename if c.isalnum() or c in '.-_')
    if not filename:
        return 'certificate.pdf'
    if '.' not in filename:
        return f"{filename}.pdf"
    return filename


def generate_secure_filename(original_filename: str) -> str:
    """Generate a randomized filename that keeps an allowed extension."""
    _, ext = os.path.splitext(original_filename.lower())
    if ext not in ALLOWED_EXTENSIONS:
        ext = '.pdf'
    return f"{uuid.uuid4()}{ext}"


def validate_certificate_file(file_path: Path) -> bool:
    """Check that the file content matches its extension (JPG, PNG or PDF)."""
    if file_path.suffix == '.pdf':
        with open(file_path, 'rb') as fh:
            return fh.read(len(PDF_MAGIC)) == PDF_MAGIC
    try:
        with Image.open(file_path) as img:
            if img.format not in ['JPEG', 'PNG']:
                return False
            if img.width > 10000 or img.height > 10000:
                return False
            img.verify()
            return True
    except (UnidentifiedImageError, OSError, SyntaxError):
        return False


async def save_certificate(file, owner_id: str) -> Optional[str]:
    """
    Store an uploaded certificate in the owner's private folder.

    Returns the storage path ``<owner_id>/<file>`` or None when the content
    is not a valid certificate. Raises ValueError when the file is too large.
    """
    secure_filename = generate_secure_filename(sanitize_filename(file.filename or ''))
    temp_path = TEMP_DIR / secure_filename

    try:
        content = await file.read()
        if len(content) > MAX_FILE_SIZE:
            raise ValueError(f"File size exceeds maximum allowed size of {MAX_FILE_SIZE / (1024 * 1024)}MB")

        async with aiofiles.open(temp_path, 'wb') as buffer:
            await buffer.write(content)

        if not validate_certificate_file(temp_path):
            logger.info(f"Rejected invalid certificate upload for {owner_id}")
            return None

        owner_dir = CERTIFICATE_DIR / owner_id
        owner_dir.mkdir(parents=True, exist_ok=True)
        shutil.move(str(temp_path), str(owner_dir / secure_filename))
        return f"{owner_id}/{secure_filename}"
    finally:
        if temp_path.exists():
            temp_path.unlink()


def get_certificate_path(storage_path: str) -> Optional[Path]:
    """Resolve a storage path to a file inside the certificate folder."""
    if not storage_path:
        return None

    # Ensure path doesn't escape the certificate directory
    path = Path(storage_path)
    if path.is_absolute() or '..' in path.parts or len(path.parts) != 2:
        return None

    full_path = CERTIFICATE_DIR / path
    if not full_path.is_file():
        return None
    return full_path


def delete_certificate(storage_path: Optional[str]):
    full_path = get_certificate_path(storage_path)
    if full_path is not None:
        full_path.unlink()


def media_type_for(path: Path) -> str:
    return MEDIA_TYPES.get(path.suffix.lower(), 'application/octet-stream')


def cleanup_temp_files():
    """Clean up temporary files left by interrupted uploads."""
    if TEMP_DIR.exists():
        for file_path in TEMP_DIR.glob("*"):
            try:
                if file_path.is_file():
                    file_path.unlink()
            except OSError as e:
                logger.warning(f"Could not remove temp file {file_path}: {e}")
