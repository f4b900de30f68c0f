"""
File handling utilities for contract lists and pipeline outputs.
"""

import json
import os
import re
from pathlib import Path
from typing import Any, Union


class FileHandler:
    """Read and write the text and JSON files used by the pipeline."""

    ENCODINGS = ['utf-8', 'utf-8-sig', 'latin-1', 'cp1252']

    _UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9_\-. ]')

    def read_text(self, path: Union[str, Path]) -> str:
        """Read a file, trying several encodings in turn."""
        file_path = Path(path)

        if not file_path.exists():
            raise FileNotFoundError(f"Path does not exist: {path}")

        for encoding in self.ENCODINGS:
            try:
                with open(file_path, 'r', encoding=encoding) as f:
                    return f.read()
            except UnicodeDecodeError:
                continue
            except Exception as e:
                raise IOError(f"Error reading file {file_path}: {e}")

        raise UnicodeDecodeError("utf-8", b"", 0, 0, "Unable to decode file with any supported encoding")

    def read_json(self, path: Union[str, Path]) -> Any:
        return json.loads(self.read_text(path))

    def write_text(self, path: Union[str, Path], content: str) -> Path:
        """Write text, creating parent directories. The file is replaced atomically."""
        file_path = Path(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = file_path.with_name(file_path.name + '.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            f.write(content)
        os.replace(tmp_path, file_path)
        return file_path

    def write_json(self, path: Union[str, Path], data: Any, indent: int = 2) -> Path:
        return self.write_text(path, json.dumps(data, indent=indent, ensure_ascii=False))

    def append_line(self, path: Union[str, Path], line: str) -> Path:
        file_path = Path(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, 'a', encoding='utf-8') as f:
            f.write(line.rstrip('\n') + '\n')
        return file_path

    def safe_filename(self, name: str) -> str:
        """Make a name usable as a single path component."""
        cleaned = self._UNSAFE_CHARS.sub('_', name).strip().replace(' ', '_')
        cleaned = cleaned.strip('.')
        return cleaned or 'Unknown'
