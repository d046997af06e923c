"""File steps: ``rename_file`` and ``sftp_upload``."""

import base64
import json
import re
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from ..errors import StepExecutionError
from ..workflow.context import EXECUTE, ExecutionContext
from ..workflow.schema import RenameFileConfig, SftpUploadConfig
from ..workflow.templating import lookup_variable
from .base import BaseStep, StepEnvironment, StepOutcome

RENAMED_FILENAME = "renamedFilename"

_KNOWN_EXTENSION = re.compile(r"\.(pdf|csv|json|xml)$", re.IGNORECASE)

TIMESTAMP_FORMATS = {
    "YYYYMMDD": "%Y%m%d",
    "YYYY-MM-DD": "%Y-%m-%d",
    "YYYYMMDD_HHMMSS": "%Y%m%d_%H%M%S",
    "YYYY-MM-DD_HH-MM-SS": "%Y-%m-%d_%H-%M-%S",
}


def strip_extension(filename: str) -> str:
    return _KNOWN_EXTENSION.sub("", filename)


class RenameFileStep(BaseStep):
    """ Build a filename from a template and store it as ``renamedFilename``. """

    config: RenameFileConfig

    def __init__(self, node_id: str, label: str, config: RenameFileConfig,
                 env: Optional[StepEnvironment] = None, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(node_id, label, config, env)
        self._clock = clock or (lambda: datetime.now(ZoneInfo(self.env.settings.timezone)))

    def filename(self, context: ExecutionContext) -> str:
        name = strip_extension(self.render(self.config.filename_template, context))
        if self.config.append_timestamp:
            name = f"{name}_{self._clock().strftime(TIMESTAMP_FORMATS[self.config.timestamp_format])}"
        if self.config.file_extension:
            name = f"{name}.{self.config.file_extension.lstrip('.')}"
        return name

    def execute(self, context: ExecutionContext) -> StepOutcome:
        name = self.filename(context)
        return StepOutcome(output={"filename": name}, context=context.set(RENAMED_FILENAME, name))

    dry_run = execute


class SftpUploadStep(BaseStep):
    """ Hand a PDF or the execute data as JSON to the ``sftp.upload`` service. """

    config: SftpUploadConfig

    def _filename(self, context: ExecutionContext) -> str:
        config = self.config
        filename = None
        if config.use_api_response_for_filename and config.filename_source_path:
            found, value = lookup_variable(context.data, config.filename_source_path, scopes=("response",))
            filename = str(value) if found else None
        filename = filename or context.get(RENAMED_FILENAME) or config.fallback_filename
        extension = f".{config.upload_type}"
        if not filename.lower().endswith(extension):
            filename = strip_extension(filename) + extension
        return filename

    def execute(self, context: ExecutionContext) -> StepOutcome:
        filename = self._filename(context)
        if self.config.upload_type == "pdf":
            content = context.get("pdfBase64")
            if not content:
                raise StepExecutionError("PDF base64 data not available")
        else:
            payload = json.dumps(context.get(EXECUTE) or {}, indent=2, default=str)
            content = base64.b64encode(payload.encode("utf-8")).decode("ascii")

        result = self.service("sftp.upload")(filename=filename, content=content, remote_path=self.config.remote_path)
        output = {"uploaded": True, "filename": filename, "remotePath": self.config.remote_path}
        if isinstance(result, dict):
            output.update(result)
        return StepOutcome(output=output, context=context)
