from __future__ import annotations

import logging
import math
import re
from datetime import UTC, datetime
from typing import Dict, List, Optional, Protocol, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..domain.chat_models import CodeResult, GenerationRequest, ResultMetadata

logger = logging.getLogger("codeassist.backend")

DEFAULT_TEMPLATE_MODEL = "codeassist-template"
TEMPLATE_MODELS = (DEFAULT_TEMPLATE_MODEL, "codeassist-template-compact")
_FENCE = re.compile(r"^```[\w+-]*\s*\n(.*?)\n?```\s*$", re.DOTALL)


class BackendError(RuntimeError):
    """A generation call failed; shown to the user, never fatal."""


class CodeBackend(Protocol):
    model: str

    def generate_code(self, request: GenerationRequest) -> CodeResult: ...

    def test_connection(self) -> bool: ...

    def available_models(self) -> List[str]: ...


def estimate_tokens(text: str) -> int:
    # Rough approximation: 1 token ~ 4 characters
    return math.ceil(len(text) / 4)


def build_prompt(request: GenerationRequest, default_language: str = "python") -> str:
    lang = request.language or default_language
    prompt = (
        f"You are an expert {lang} developer. Generate clean, well-documented, production-ready code.\n\n"
        "Guidelines:\n"
        f"- Write idiomatic {lang} code\n"
        "- Include proper error handling\n"
        "- Only return the code, no explanations or markdown formatting\n\n"
        f"Request: {request.prompt}"
    )
    if request.context:
        prompt = f"Context: {request.context}\n\n{prompt}"
    return prompt


def strip_code_fences(text: str) -> str:
    stripped = text.strip()
    match = _FENCE.match(stripped)
    if match:
        return match.group(1)
    return stripped


# ----------------------------------------------------------------------
# Offline templates
# ----------------------------------------------------------------------
_PY_HELLO = '''def hello_world():
    """Return a friendly greeting."""
    return "Hello, World!"


def greet(name="World"):
    """Greet a person by name."""
    return f"Hello, {name}!"


if __name__ == "__main__":
    print(hello_world())
    print(greet("Alice"))'''

_PY_SORT = '''def sort_array(arr):
    """Return a sorted copy of ``arr`` using quick sort."""
    if len(arr) <= 1:
        return list(arr)
    pivot = arr[len(arr) // 2]
    left = [x for x in arr if x < pivot]
    middle = [x for x in arr if x == pivot]
    right = [x for x in arr if x > pivot]
    return sort_array(left) + middle + sort_array(right)


if __name__ == "__main__":
    numbers = [64, 34, 25, 12, 22, 11, 90]
    print(f"Original: {numbers}")
    print(f"Sorted: {sort_array(numbers)}")'''

_TS_COMPONENT = """import React from 'react';

interface ComponentProps {
  title?: string;
  children?: React.ReactNode;
}

const MyComponent: React.FC<ComponentProps> = ({ title = 'My Component', children }) => {
  return (
    <div style={{ padding: '20px', border: '1px solid #ccc', borderRadius: '8px' }}>
      <h2>{title}</h2>
      {children && <div>{children}</div>}
    </div>
  );
};

export default MyComponent;"""

_TS_TODO = """import React, { useState } from 'react';

interface Todo {
  id: number;
  text: string;
  completed: boolean;
}

const TodoList: React.FC = () => {
  const [todos, setTodos] = useState<Todo[]>([]);
  const [inputValue, setInputValue] = useState('');

  const addTodo = () => {
    if (inputValue.trim() !== '') {
      setTodos([...todos, { id: Date.now(), text: inputValue.trim(), completed: false }]);
      setInputValue('');
    }
  };

  const toggleTodo = (id: number) => {
    setTodos(todos.map(todo => (todo.id === id ? { ...todo, completed: !todo.completed } : todo)));
  };

  return (
    <div>
      <h1>Todo List</h1>
      <input value={inputValue} onChange={e => setInputValue(e.target.value)} />
      <button onClick={addTodo}>Add Todo</button>
      <ul>
        {todos.map(todo => (
          <li key={todo.id} onClick={() => toggleTodo(todo.id)}>
            {todo.completed ? <s>{todo.text}</s> : todo.text}
          </li>
        ))}
      </ul>
    </div>
  );
};

export default TodoList;"""

# (language, required keywords, code)
_TEMPLATES: Tuple[Tuple[str, Tuple[str, ...], str], ...] = (
    ("typescript", ("react", "todo"), _TS_TODO),
    ("typescript", ("react", "component"), _TS_COMPONENT),
    ("python", ("sort",), _PY_SORT),
    ("python", ("hello",), _PY_HELLO),
)

_FALLBACKS: Dict[str, str] = {
    "python": (
        "def generated_function():\n"
        "    \"\"\"Generated for: {prompt}\"\"\"\n"
        "    raise NotImplementedError\n"
    ),
    "typescript": (
        "// Generated for: {prompt}\n"
        "export function generatedFunction(): string {{\n"
        "  return 'TODO';\n"
        "}}\n"
    ),
    "javascript": (
        "// Generated for: {prompt}\n"
        "function generatedFunction() {{\n"
        "  return 'TODO';\n"
        "}}\n\n"
        "module.exports = {{ generatedFunction }};\n"
    ),
}


class TemplateBackend:
    """Deterministic offline backend that answers from built-in templates.

    Used when no model endpoint is configured, and in tests.
    """

    def __init__(self, model: str = DEFAULT_TEMPLATE_MODEL, default_language: str = "python") -> None:
        self.model = model
        self.default_language = default_language

    def _render(self, prompt_text: str, language: str) -> str:
        lowered = prompt_text.lower()
        for lang, keywords, code in _TEMPLATES:
            if lang == language and all(k in lowered for k in keywords):
                return code
        fallback = _FALLBACKS.get(language)
        if fallback:
            return fallback.format(prompt=prompt_text.strip())
        return f"// Generated {language} code\n// Request: {prompt_text.strip()}\n"

    def generate_code(self, request: GenerationRequest) -> CodeResult:
        language = request.language or self.default_language
        prompt = build_prompt(request, self.default_language)
        code = self._render(request.prompt, language)
        return CodeResult(
            code=code,
            language=language,
            metadata=ResultMetadata(
                tokens_used=estimate_tokens(prompt + code),
                model=self.model,
                timestamp=datetime.now(UTC),
            ),
        )

    def test_connection(self) -> bool:
        try:
            self.generate_code(GenerationRequest(prompt="create a hello world function", max_tokens=100))
            return True
        except Exception:
            return False

    def available_models(self) -> List[str]:
        return list(TEMPLATE_MODELS)


# ----------------------------------------------------------------------
# Local HTTP model (OpenAI-compatible or Ollama)
# ----------------------------------------------------------------------
def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=2, pool_maxsize=2)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class LocalLLMBackend:
    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = 60.0,
        api_style: str = "auto",
        default_language: str = "python",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.default_language = default_language
        self._timeout = (3, max(1, int(timeout)))
        self._session = _build_session()
        self.api_style = (api_style or "auto").lower()

    def generate_code(self, request: GenerationRequest) -> CodeResult:
        prompt = build_prompt(request, self.default_language)
        messages = [{"role": "user", "content": prompt}]
        try:
            raw = self._invoke(messages, request)
        except requests.exceptions.RequestException as exc:
            logger.warning("backend_request_failed", extra={"base_url": self.base_url, "model": self.model, "err": str(exc)})
            raise BackendError(f"Code generation failed: {exc}") from exc
        code = strip_code_fences(raw)
        if not code:
            raise BackendError("Code generation failed: empty response from model")
        return CodeResult(
            code=code,
            language=request.language or self.default_language,
            metadata=ResultMetadata(
                tokens_used=estimate_tokens(prompt + code),
                model=self.model,
                timestamp=datetime.now(UTC),
            ),
        )

    def _invoke(self, messages: List[Dict[str, str]], request: GenerationRequest) -> str:
        if self.api_style == "ollama":
            return self._invoke_ollama(messages, request)
        if self.api_style == "openai":
            return self._invoke_openai(messages, request)
        try:
            return self._invoke_openai(messages, request)
        except requests.exceptions.RequestException as exc:
            logger.warning(
                "backend_openai_failed_switching_to_ollama",
                extra={"base_url": self.base_url, "model": self.model, "err": str(exc)},
            )
            self.api_style = "ollama"
            return self._invoke_ollama(messages, request)

    def _options(self, request: GenerationRequest) -> Dict[str, object]:
        options: Dict[str, object] = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.max_tokens is not None:
            options["max_tokens"] = request.max_tokens
        return options

    def _invoke_openai(self, messages: List[Dict[str, str]], request: GenerationRequest) -> str:
        logger.debug("backend_invoke", extra={"model": self.model, "base_url": self.base_url})
        payload: Dict[str, object] = {"model": self.model, "messages": messages, "stream": False}
        payload.update(self._options(request))
        resp = self._session.post(f"{self.base_url}/v1/chat/completions", json=payload, timeout=self._timeout)
        resp.raise_for_status()
        data = resp.json()
        choices = data.get("choices") or []
        if choices:
            message = choices[0].get("message") or {}
            content = message.get("content")
            if content:
                return content
        return data.get("response") or data.get("text") or ""

    def _invoke_ollama(self, messages: List[Dict[str, str]], request: GenerationRequest) -> str:
        prompt = self._messages_to_prompt(messages)
        options = self._options(request)
        if "max_tokens" in options:
            options["num_predict"] = options.pop("max_tokens")
        payload = {"model": self.model, "prompt": prompt, "stream": False, "options": options}
        resp = self._session.post(f"{self.base_url}/api/generate", json=payload, timeout=self._timeout)
        resp.raise_for_status()
        data = resp.json()
        return data.get("response") or data.get("text") or ""

    @staticmethod
    def _messages_to_prompt(messages: List[Dict[str, str]]) -> str:
        parts: List[str] = []
        for msg in messages:
            role = (msg.get("role") or "user").strip().upper()
            content = msg.get("content") or ""
            parts.append(f"{role}: {content}")
        parts.append("ASSISTANT:")
        return "\n".join(parts)

    def available_models(self) -> List[str]:
        try:
            resp = self._session.get(f"{self.base_url}/api/tags", timeout=self._timeout)
            resp.raise_for_status()
            models = [m.get("name") for m in (resp.json().get("models") or []) if m.get("name")]
            if models:
                return models
        except (requests.exceptions.RequestException, ValueError) as exc:
            logger.debug("backend_tags_failed", extra={"base_url": self.base_url, "err": str(exc)})
        try:
            resp = self._session.get(f"{self.base_url}/v1/models", timeout=self._timeout)
            resp.raise_for_status()
            return [m.get("id") for m in (resp.json().get("data") or []) if m.get("id")]
        except (requests.exceptions.RequestException, ValueError) as exc:
            logger.warning("backend_models_unavailable base_url=%s err=%s", self.base_url, exc)
            return []

    def test_connection(self) -> bool:
        return bool(self.available_models())


def get_backend(
    kind: str,
    *,
    model: Optional[str] = None,
    base_url: str = "http://127.0.0.1:11434",
    timeout: float = 60.0,
    default_language: str = "python",
) -> CodeBackend:
    kind = (kind or "template").lower()
    if kind == "local":
        logger.info("Using local model backend base_url=%s model=%s", base_url, model)
        return LocalLLMBackend(
            base_url=base_url,
            model=model or "llama3.2:latest",
            timeout=timeout,
            default_language=default_language,
        )
    if kind != "template":
        raise ValueError(f"Unknown backend: {kind}")
    return TemplateBackend(model=model or DEFAULT_TEMPLATE_MODEL, default_language=default_language)
