"""
Unlock Pipeline Module
Orchestrates the write path (remove VBA password, relax protection,
repair the package) and the read path (extract VBA modules).

Stages run in a fixed order on one exclusively owned OfficePackage.
Binary-stage problems abort the run; XML-stage problems are reported per
part and the run carries on. Callers only see a result object with a
success flag and the accumulated log.
"""
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from config import Config, get_config
from module_exporter import create_vba_code_file
from office_package import (
    OfficePackage, PackageError, detect_vba_content, is_ole_container, is_zip_container,
)
from package_repairer import IntegrityIssue, PackageRepairer
from process_log import LogCallback, ProcessLog, ProgressCallback
from trust_relaxer import RelaxOptions, TrustRelaxer
from vba_checksum import ChecksumError, restamp
from vba_extractor import ExtractionSource, ModuleDescriptor, VBAExtractor
from vba_protection import NULL_FILL, SPACE_FILL, neutralize

logger = logging.getLogger(__name__)

MIME_MACRO_ENABLED = "application/vnd.ms-excel.sheet.macroEnabled.12"
MIME_BINARY_MACRO_ENABLED = "application/vnd.ms-excel.sheet.binary.macroEnabled.12"

# Progress reported at stage boundaries
PROGRESS_LOADED = 5
PROGRESS_VALIDATED = 15
PROGRESS_VBA_LOCATED = 25
PROGRESS_NEUTRALIZED = 45
PROGRESS_CHECKSUM = 55
PROGRESS_RELAXED = 70
PROGRESS_REPAIRED = 85
PROGRESS_DONE = 100

FILL_BYTES = {"null": NULL_FILL, "space": SPACE_FILL}


class PipelineCancelled(Exception):
    """The caller abandoned the run between stages."""


class CancellationToken:
    """Cooperative cancellation flag checked between stages."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise PipelineCancelled("Processing was cancelled")


@dataclass
class UnlockResult:
    """Outcome of the write path."""
    success: bool
    data: Optional[bytes] = None
    filename: str = ""
    mime_type: str = MIME_MACRO_ENABLED
    protection_found: bool = False
    issues: List[IntegrityIssue] = field(default_factory=list)
    log: Optional[ProcessLog] = None


@dataclass
class ExtractionResult:
    """Outcome of the read path."""
    success: bool
    modules: List[ModuleDescriptor] = field(default_factory=list)
    strategy: Optional[str] = None
    log: Optional[ProcessLog] = None

    def export_text(self, filename: str) -> str:
        return create_vba_code_file(self.modules, filename)


def unlocked_filename(filename: str) -> str:
    stem, ext = os.path.splitext(os.path.basename(filename or "workbook.xlsm"))
    return f"{stem}_unlocked{ext or '.xlsm'}"


class WorkbookUnlocker:
    """Run the unlock or extraction pipeline over one uploaded file."""

    def __init__(self, data: bytes, filename: str = "workbook.xlsm",
                 config: Optional[type] = None,
                 on_log: Optional[LogCallback] = None,
                 on_progress: Optional[ProgressCallback] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 relax_options: Optional[RelaxOptions] = None):
        """
        Initialize the unlocker.

        Args:
            data: Uploaded file bytes
            filename: Original file name (used for messages and output name)
            config: Config class; defaults to get_config()
            on_log: Optional ``(message, severity)`` callback
            on_progress: Optional ``(percent)`` callback
            cancel_token: Optional token checked between stages
            relax_options: Overrides the relaxations derived from config
        """
        self.data = data
        self.filename = filename
        self.config = config or get_config()
        self.cancel_token = cancel_token or CancellationToken()
        self.relax_options = relax_options or RelaxOptions.from_config(self.config)
        self.log = ProcessLog(on_log, on_progress, logger)

    # -- shared stages ---------------------------------------------------

    def _admit(self) -> None:
        limit_mb = getattr(self.config, "MAX_FILE_SIZE_MB", Config.MAX_FILE_SIZE_MB)
        if not self.data:
            raise PackageError("File is empty")
        if len(self.data) > limit_mb * 1024 * 1024:
            raise PackageError(f"File is too large (max {limit_mb}MB)")

    def _load(self) -> OfficePackage:
        self.log.info(f"Loading {self.filename}...")
        package = OfficePackage.from_bytes(self.data)
        self.log.progress(PROGRESS_LOADED)
        if package.unreadable:
            self.log.warning(f"{len(package.unreadable)} archive entries could not be read.")

        package.validate()
        self.log.info("Office file structure is valid.")
        if not detect_vba_content(self.data):
            self.log.info("No VBA markers found in the raw file.")
        self.log.progress(PROGRESS_VALIDATED)
        return package

    def _fail(self, message: str) -> None:
        self.log.error(message)
        self.log.progress(PROGRESS_DONE)

    # -- write path ------------------------------------------------------

    def remove_protection(self) -> UnlockResult:
        """
        Remove the VBA password, relax protection and repair the package.

        Returns:
            UnlockResult; ``success`` is False on any fatal problem
        """
        result = UnlockResult(success=False, filename=unlocked_filename(self.filename), log=self.log)
        try:
            self._admit()
            if not is_zip_container(self.data):
                if is_ole_container(self.data):
                    raise PackageError("Legacy .xls files are not ZIP packages and cannot be unlocked; "
                                       "save the workbook as .xlsm first")
                raise PackageError("Not a ZIP-based Office package")

            package = self._load()
            self.cancel_token.check()

            vba_path = package.find_vba_project()
            if vba_path is None:
                raise PackageError("No VBA project found in this file")
            self.log.info(f"Found VBA project at {vba_path}.")
            self.log.progress(PROGRESS_VBA_LOCATED)
            self.cancel_token.check()

            fill = FILL_BYTES.get(str(getattr(self.config, "VBA_HASH_FILL", "null")).lower(), NULL_FILL)
            neutralized = neutralize(package.read(vba_path), fill=fill, on_log=self.log.log)
            result.protection_found = neutralized.protection_found
            if neutralized.protection_found:
                self.log.success("VBA password protection removed.")
            else:
                self.log.info("The VBA project does not appear to be password protected.")
            self.log.progress(PROGRESS_NEUTRALIZED)
            self.cancel_token.check()

            package.write(vba_path, restamp(neutralized.data))
            self.log.info("VBA project checksum updated.")
            self.log.progress(PROGRESS_CHECKSUM)
            self.cancel_token.check()

            TrustRelaxer(package, self.relax_options, self.log).run()
            self.log.progress(PROGRESS_RELAXED)
            self.cancel_token.check()

            repair = PackageRepairer(package, self.log).run()
            result.issues = repair.issues
            self.log.progress(PROGRESS_REPAIRED)
            self.cancel_token.check()

            level = getattr(self.config, "ZIP_COMPRESSION_LEVEL", 9)
            result.data = package.to_bytes(compresslevel=level)
            if package.is_binary_workbook:
                result.mime_type = MIME_BINARY_MACRO_ENABLED
            result.success = True
            self.log.success(f"{result.filename} is ready.")
            self.log.progress(PROGRESS_DONE)
        except (PackageError, ChecksumError, PipelineCancelled) as exc:
            self._fail(str(exc))
        return result

    # -- read path -------------------------------------------------------

    def extract_modules(self) -> ExtractionResult:
        """
        Extract the VBA modules, falling back through the extraction strategies.

        Returns:
            ExtractionResult with sorted modules
        """
        result = ExtractionResult(success=False, log=self.log)
        try:
            self._admit()
            if is_ole_container(self.data):
                self.log.info("Legacy OLE workbook: reading the VBA project directly.")
                source = ExtractionSource(vba_data=self.data, filename=self.filename, vba_present=True)
                self.log.progress(PROGRESS_VBA_LOCATED)
            else:
                package = self._load()
                self.cancel_token.check()
                vba_path = package.find_vba_project()
                sheet_names = package.sheet_names()
                if vba_path is None:
                    raise PackageError("No VBA project found in this file")
                self.log.info(f"Found VBA project at {vba_path}.")
                source = ExtractionSource(
                    vba_data=package.read(vba_path),
                    filename=os.path.basename(vba_path),
                    sheet_names=sheet_names,
                    vba_present=True,
                )
                self.log.progress(PROGRESS_VBA_LOCATED)
            self.cancel_token.check()

            extractor = VBAExtractor(source, on_log=self.log.log)
            result.modules = extractor.extract_all()
            result.strategy = extractor.strategy_used
            self.log.progress(PROGRESS_REPAIRED)

            result.success = bool(result.modules)
            if result.success:
                self.log.success(f"Extracted {len(result.modules)} VBA module(s).")
            else:
                self.log.error("No VBA modules could be extracted.")
            self.log.progress(PROGRESS_DONE)
        except (PackageError, PipelineCancelled) as exc:
            self._fail(str(exc))
        return result


def remove_vba_password(data: bytes, filename: str = "workbook.xlsm",
                        on_log: Optional[LogCallback] = None,
                        on_progress: Optional[ProgressCallback] = None,
                        config: Optional[type] = None) -> UnlockResult:
    """
    Convenience function for the write path.

    Args:
        data: Uploaded workbook bytes
        filename: Original file name
        on_log: Optional ``(message, severity)`` callback
        on_progress: Optional ``(percent)`` callback
        config: Config class override

    Returns:
        UnlockResult
    """
    return WorkbookUnlocker(data, filename, config, on_log, on_progress).remove_protection()


def extract_vba_code(data: bytes, filename: str = "workbook.xlsm",
                     on_log: Optional[LogCallback] = None,
                     on_progress: Optional[ProgressCallback] = None,
                     config: Optional[type] = None) -> ExtractionResult:
    """Convenience function for the read path."""
    return WorkbookUnlocker(data, filename, config, on_log, on_progress).extract_modules()
