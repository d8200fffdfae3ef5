# llama_server_backend.py
#
# Imports
import json
import subprocess
import time
from pathlib import Path
from typing import IO, Any, Dict, Iterator, List, Optional
#
# Third-party Libraries
import httpx
from loguru import logger
#
# Local Imports
from ..exceptions import BackendError, BackendLoadError
from .backend import InferenceBackend
#
########################################################################################################################
#
# Functions:

def start_llama_server(
    binary: str,
    model_path: str,
    host: str,
    port: int,
    context_size: int,
    additional_args: Optional[List[str]] = None,
    log_file: Optional[IO[str]] = None
) -> subprocess.Popen:
    """
    Starts a llama.cpp server for model_path using subprocess.Popen.

    Server output goes to log_file, or is discarded when none is given.

    Raises:
        BackendLoadError: if the binary cannot be started.
    """
    output = log_file if log_file is not None else subprocess.DEVNULL
    command = [
        binary,
        "--model", model_path,
        "--host", host,
        "--port", str(port),
        "--ctx-size", str(context_size),
    ]
    if additional_args:
        command.extend(additional_args)

    logger.info(f"Starting llama.cpp server with command: {' '.join(command)}")
    try:
        process = subprocess.Popen(
            command,
            stdout=output,
            stderr=subprocess.STDOUT,
            text=True,
        )
    except FileNotFoundError as e:
        raise BackendLoadError(
            f"'{binary}' not found. Install llama.cpp and make sure llama-server is on your PATH."
        ) from e
    except OSError as e:
        raise BackendLoadError(f"Could not start llama.cpp server: {e}") from e

    logger.info(f"llama.cpp server started with PID: {process.pid}")
    return process


def stop_llama_server(process: Optional[subprocess.Popen]) -> None:
    """Stops the llama.cpp server process, killing it if it does not exit in time."""
    if process is None:
        return

    if process.poll() is not None:
        logger.info(f"llama.cpp server (PID: {process.pid}) already terminated with code {process.returncode}.")
        return

    logger.info(f"Stopping llama.cpp server with PID: {process.pid}...")
    try:
        process.terminate()
        try:
            process.wait(timeout=10)
            logger.info(f"llama.cpp server (PID: {process.pid}) terminated with code {process.returncode}.")
        except subprocess.TimeoutExpired:
            logger.warning(f"llama.cpp server (PID: {process.pid}) did not terminate within timeout. Killing...")
            process.kill()
            process.wait(timeout=5)
    except ProcessLookupError:
        logger.info(f"llama.cpp server (PID: {process.pid}) was already gone before explicit stop.")


class LlamaServerBackend(InferenceBackend):
    """
    Runs a GGUF model through a private llama.cpp server process.

    create() starts the server and waits for /health; generate() streams
    /v1/chat/completions. When persist_history is set, finished turns are
    replayed on every request so the model keeps the conversation.
    """

    def __init__(self,
                 binary: str = "llama-server",
                 host: str = "127.0.0.1",
                 port: int = 8089,
                 startup_timeout: float = 120.0,
                 request_timeout: float = 600.0,
                 additional_args: Optional[List[str]] = None,
                 server_log_path: Optional[Path] = None,
                 client: Optional[httpx.Client] = None):
        self.binary = binary
        self.host = host
        self.port = port
        self.startup_timeout = startup_timeout
        self.additional_args = additional_args
        self.server_log_path = server_log_path
        self._client = client or httpx.Client(timeout=httpx.Timeout(request_timeout, connect=5.0))
        self._process: Optional[subprocess.Popen] = None
        self._log_file: Optional[IO[str]] = None
        self._reset_session()

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def _reset_session(self) -> None:
        self._min_p = 0.1
        self._temperature = 0.8
        self._persist_history = True
        self._system_prompt = ""
        self._history: List[Dict[str, str]] = []
        self._context_used = 0
        self._speed = 0.0

    # ==================== Lifecycle ====================

    def create(self, model_path: str, min_p: float, temperature: float,
               persist_history: bool, context_size: int) -> None:
        self.close()
        self._min_p = min_p
        self._temperature = temperature
        self._persist_history = persist_history
        if self.server_log_path is not None:
            self._log_file = open(self.server_log_path, "a", encoding="utf-8")
        try:
            self._process = start_llama_server(
                self.binary, model_path, self.host, self.port, context_size,
                self.additional_args, self._log_file
            )
            self._wait_until_healthy()
        except BackendLoadError:
            self.close()
            raise

    def _server_log_tail(self) -> str:
        if self.server_log_path is None or not self.server_log_path.exists():
            return ""
        return self.server_log_path.read_text(encoding="utf-8", errors="replace").strip()[-500:]

    def _wait_until_healthy(self) -> None:
        deadline = time.monotonic() + self.startup_timeout
        while time.monotonic() < deadline:
            if self._process is not None and self._process.poll() is not None:
                raise BackendLoadError(
                    f"llama.cpp server exited with code {self._process.returncode}. {self._server_log_tail()}".strip()
                )
            try:
                response = self._client.get(f"{self.base_url}/health", timeout=2.0)
                if response.status_code == 200:
                    logger.debug("llama.cpp server is healthy")
                    return
            except httpx.TransportError:
                pass  # Not listening yet
            time.sleep(0.25)
        raise BackendLoadError(f"llama.cpp server did not become ready within {self.startup_timeout}s")

    def add_system_prompt(self, text: str) -> None:
        self._system_prompt = text

    def close(self) -> None:
        process, self._process = self._process, None
        stop_llama_server(process)
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None
        self._reset_session()

    # ==================== Generation ====================

    def _build_messages(self, prompt: str) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        if self._persist_history:
            messages.extend(self._history)
        messages.append({"role": "user", "content": prompt})
        return messages

    def generate(self, prompt: str) -> Iterator[str]:
        if self._process is None:
            raise BackendError("No model is loaded")

        payload = {
            "messages": self._build_messages(prompt),
            "stream": True,
            "min_p": self._min_p,
            "temperature": self._temperature,
        }
        pieces: List[str] = []
        try:
            with self._client.stream("POST", f"{self.base_url}/v1/chat/completions", json=payload) as response:
                if response.status_code >= 400:
                    response.read()
                    raise BackendError(f"llama.cpp server returned {response.status_code}: {response.text[:500]}")
                for line in response.iter_lines():
                    chunk = self._parse_sse_line(line)
                    if chunk is None:
                        continue
                    self._record_stats(chunk)
                    for choice in chunk.get("choices") or []:
                        content = (choice.get("delta") or {}).get("content")
                        if content:
                            pieces.append(content)
                            yield content
        except httpx.HTTPError as e:
            raise BackendError(f"Streaming from llama.cpp server failed: {e}") from e

        if self._persist_history:
            self._history.append({"role": "user", "content": prompt})
            self._history.append({"role": "assistant", "content": "".join(pieces)})

    @staticmethod
    def _parse_sse_line(line: str) -> Optional[Dict[str, Any]]:
        line = line.strip()
        if not line.startswith("data:"):
            return None
        data = line[len("data:"):].strip()
        if not data or data == "[DONE]":
            return None
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.debug(f"Skipping undecodable stream line: {data[:100]}")
            return None
        if isinstance(chunk, dict) and "error" in chunk:
            raise BackendError(f"llama.cpp server error: {chunk['error']}")
        return chunk if isinstance(chunk, dict) else None

    def _record_stats(self, chunk: Dict[str, Any]) -> None:
        timings = chunk.get("timings")
        if isinstance(timings, dict):
            self._speed = float(timings.get("predicted_per_second") or self._speed)
            prompt_n = int(timings.get("prompt_n") or 0) + int(timings.get("cache_n") or 0)
            self._context_used = prompt_n + int(timings.get("predicted_n") or 0)
        usage = chunk.get("usage")
        if isinstance(usage, dict) and usage.get("total_tokens"):
            self._context_used = int(usage["total_tokens"])

    def context_length_used(self) -> int:
        return self._context_used

    def generation_speed(self) -> float:
        return self._speed

#
# End of llama_server_backend.py
########################################################################################################################
