"""
Module Exporter Module
Turns extracted VBA modules into downloadable files
"""
import io
import logging
import os
import re
import zipfile
from datetime import datetime
from typing import Dict, List, Optional

from vba_extractor import ModuleDescriptor, ModuleType

logger = logging.getLogger(__name__)

SEPARATOR = "'" + "=" * 58

MODULE_EXTENSIONS: Dict[ModuleType, str] = {
    ModuleType.STANDARD: ".bas",
    ModuleType.CLASS: ".cls",
    ModuleType.DOCUMENT: ".cls",
    ModuleType.FORM: ".frm",
    ModuleType.UNKNOWN: ".txt",
}

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9_.-]+")


def create_vba_code_file(modules: List[ModuleDescriptor], filename: str,
                         extracted_at: Optional[datetime] = None) -> str:
    """
    Build the plain-text export of all modules.

    Args:
        modules: Modules in display order
        filename: Name of the workbook they came from
        extracted_at: Timestamp for the header (defaults to now)

    Returns:
        Export text, one framed section per module
    """
    extracted_at = extracted_at or datetime.now()
    lines = [
        f"VBA Code extracted from: {filename}",
        f"Extraction date: {extracted_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"Number of modules: {len(modules)}",
        "",
    ]
    for module in modules:
        lines.extend([
            SEPARATOR,
            f"' Module: {module.name}",
            f"' Type: {module.type.label}",
            f"' Extraction: {module.confidence.value}",
            SEPARATOR,
            "",
            module.code,
            "",
        ])
    return "\n".join(lines) + "\n"


def module_filename(module: ModuleDescriptor) -> str:
    """File name for a module inside the archive (``Module1.bas``)."""
    stem = _UNSAFE_CHARS_RE.sub("_", module.name).strip("._") or "Module"
    return stem + MODULE_EXTENSIONS[module.type]


def build_module_archive(modules: List[ModuleDescriptor]) -> bytes:
    """
    Bundle modules into a ZIP of ``.bas`` / ``.cls`` / ``.frm`` files.

    Name clashes after sanitizing get a numeric suffix.
    """
    buffer = io.BytesIO()
    used = set()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for module in modules:
            name = module_filename(module)
            stem, ext = os.path.splitext(name)
            counter = 2
            while name.lower() in used:
                name = f"{stem}_{counter}{ext}"
                counter += 1
            used.add(name.lower())
            # VBA source files are CRLF / cp1252 on disk
            zf.writestr(name, module.code.encode("cp1252", errors="replace"))
    logger.debug("Archived %d module(s)", len(modules))
    return buffer.getvalue()


def export_filename(workbook_name: str, suffix: str) -> str:
    """``Book1.xlsm`` -> ``Book1_vba.txt`` style download names."""
    stem = os.path.splitext(os.path.basename(workbook_name))[0] or "workbook"
    return f"{stem}{suffix}"
