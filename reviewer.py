# reviewer.py
# -----------------------------------------------------------------------------
# AI review chat for one exam module.
# - ReviewChatClient: OpenAI chat completions over requests, one in-memory
#   conversation per opaque handle, grounded on the module's questions,
#   idle conversations swept after idle_ttl
# - Blueprint: reviewer page (from lobby or exam) + JSON chat endpoint;
#   plain Q&A review when no chat can be started
# Chat failures never touch the exam flow; they come back as bot messages.
# -----------------------------------------------------------------------------

import os
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

import bleach
import markdown
import requests
from flask import (
    Blueprint, request, jsonify, render_template, redirect, url_for, session
)
from markupsafe import Markup, escape

from exam_models import Module

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
CHAT_SESSION_KEY = "cfmti_review_chat"

NOT_ACTIVE_MSG = "The AI chat session is not active. Please start a review session first."
INVALID_KEY_MSG = "The API key is invalid. Please check your configuration."
NO_RESPONSE_MSG = "Failed to get a response from the AI model. Please try again."
INIT_FAILED_MSG = "Could not initialize the AI Assistant for review. Please try again later."
CONFIG_ERROR_MSG = (
    "The AI Assistant is not configured for this deployment (missing or invalid API key). "
    "Please contact the administrator."
)
DISABLED_MSG = "The AI review assistant is turned off for this deployment."

REPLY_ALLOWED_TAGS = [
    "a", "b", "blockquote", "br", "code", "em", "h1", "h2", "h3", "h4", "hr", "i",
    "li", "ol", "p", "pre", "strong", "table", "tbody", "td", "th", "thead", "tr", "ul",
]
REPLY_ALLOWED_ATTRS = {"a": ["href", "title", "rel", "target"]}


class ReviewChatError(RuntimeError):
    def __init__(self, message: str, config_error: bool = False):
        super().__init__(message)
        self.config_error = config_error


def build_system_prompt(module: Module) -> str:
    blocks = []
    for i, q in enumerate(module.questions, start=1):
        choices = "\n".join(f"  {k}) {v}" for k, v in q.choices.items())
        blocks.append(f"Question {i}: {q.text}\n{choices}\nCorrect Answer: {q.correct}")
    context = "\n\n".join(blocks)
    return (
        'You are "CFM-AI", a specialized AI tutor for refrigeration and air conditioning '
        f'technicians. Your current task is to help a trainee master the module: "{module.title}".\n\n'
        "Your entire knowledge base for this session consists of the following questions, "
        "choices, and correct answers from the module:\n"
        f"---\n{context}\n---\n\n"
        "When the trainee asks a question, use this knowledge base to ground your explanation "
        "and reference the related concept where it helps.\n\n"
        "CRITICAL RULE: You must NEVER reveal the letter of the correct answer (e.g. \"The answer is B\"). "
        "Teach the underlying principle so the trainee can work the answer out. If asked for the "
        "answer to a question, explain the concept behind that question instead.\n\n"
        "Be encouraging, use clear language and Markdown formatting (lists, bold text, headings)."
    )


def render_reply(text: Optional[str]) -> Markup:
    """Markdown -> sanitized HTML for the chat transcript."""
    if not text:
        return Markup("")
    try:
        html = markdown.markdown(text, extensions=["fenced_code", "tables", "sane_lists"], output_format="html5")
    except Exception:
        html = "<p>" + str(escape(text)).replace("\n\n", "</p><p>").replace("\n", "<br/>") + "</p>"
    return Markup(bleach.clean(html, tags=REPLY_ALLOWED_TAGS, attributes=REPLY_ALLOWED_ATTRS, strip=True))


class ReviewChatClient:
    def __init__(self, api_key: Optional[str], model: str = "gpt-4o-mini",
                 post: Callable[..., Any] = requests.post, timeout: float = 60,
                 idle_ttl: float = 3600, clock: Callable[[], float] = time.monotonic):
        self.api_key = (api_key or "").strip()
        self.model = model
        self._post = post
        self.timeout = timeout
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _sweep_idle(self) -> int:
        """Drop conversations untouched for idle_ttl seconds. Caller holds the lock."""
        cutoff = self._clock() - self.idle_ttl
        stale = [h for h, chat in self._sessions.items() if chat.get("touched", 0) < cutoff]
        for h in stale:
            self._sessions.pop(h, None)
        if stale:
            print(f"[review] dropped {len(stale)} idle chat session(s)")
        return len(stale)

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def key_usable(self) -> bool:
        k = self.api_key
        return bool(k) and "REPLACE" not in k and len(k) >= 10

    def start_session(self, module: Module) -> str:
        if not self.key_usable():
            print("[review] OpenAI API key missing or invalid; chat disabled")
            raise ReviewChatError("AI_CONFIG_ERROR::API_KEY_MISSING_OR_INVALID", config_error=True)
        try:
            handle = uuid.uuid4().hex
            messages = [{"role": "system", "content": build_system_prompt(module)}]
        except Exception as e:
            print(f"[review] failed to initialize review chat: {e}")
            raise ReviewChatError(INIT_FAILED_MSG) from e
        with self._lock:
            self._sweep_idle()
            self._sessions[handle] = {"module_id": module.id, "messages": messages, "touched": self._clock()}
        print(f"[review] chat session {handle[:8]} started for module {module.id}")
        return handle

    def has_session(self, handle: Optional[str]) -> bool:
        return bool(handle) and handle in self._sessions

    def end_session(self, handle: Optional[str]) -> None:
        with self._lock:
            self._sessions.pop(handle or "", None)

    def send_message(self, handle: Optional[str], text: str) -> str:
        chat = self._sessions.get(handle or "")
        if chat is None:
            raise ReviewChatError(NOT_ACTIVE_MSG)
        messages: List[Dict[str, str]] = chat["messages"] + [{"role": "user", "content": text}]
        try:
            r = self._post(
                OPENAI_CHAT_URL,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json={"model": self.model, "messages": messages, "temperature": 0.4},
                timeout=self.timeout,
            )
            if getattr(r, "status_code", 200) == 401:
                self.end_session(handle)
                print("[review] OpenAI rejected the API key; session dropped")
                raise ReviewChatError(INVALID_KEY_MSG, config_error=True)
            r.raise_for_status()
            data = r.json()
            reply = (data["choices"][0]["message"]["content"] or "").strip()
        except ReviewChatError:
            raise
        except Exception as e:
            print(f"[review] chat completion failed: {e}")
            raise ReviewChatError(NO_RESPONSE_MSG) from e

        with self._lock:
            if handle in self._sessions:
                self._sessions[handle]["messages"] = messages + [{"role": "assistant", "content": reply}]
                self._sessions[handle]["touched"] = self._clock()
        return reply


def end_review_chat(client: Optional[ReviewChatClient]) -> None:
    """Forget this browser's chat: drop the session key and release the conversation."""
    chat = session.pop(CHAT_SESSION_KEY, None) or {}
    if client is not None and chat.get("handle"):
        client.end_session(chat["handle"])
        print(f"[review] chat session {chat['handle'][:8]} ended")


def client_from_env() -> ReviewChatClient:
    return ReviewChatClient(
        api_key=os.getenv("OPENAI_API_KEY"),
        model=(os.getenv("OPENAI_REVIEW_MODEL") or "gpt-4o-mini").strip(),
    )


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_reviewer_blueprint(base_path: str, deps: Dict[str, Any], name: str = "reviewer") -> Blueprint:
    """
    Required deps: controller() -> ExamController for the current request,
                   chat_client (ReviewChatClient)
    Optional deps: enabled (bool)
    """
    url_prefix = (base_path.rstrip("/") + "/reviewer") if base_path else "/reviewer"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    get_controller: Callable = deps["controller"]
    client: ReviewChatClient = deps["chat_client"]
    enabled: bool = bool(deps.get("enabled", True))
    exam_bp: str = deps.get("exam_endpoint_prefix") or "exam"

    def _back_to(ctl) -> str:
        if ctl.view.name == "exam":
            return url_for(f"{exam_bp}.exam_page")
        return url_for(f"{exam_bp}.index")

    @bp.post("/open")
    def reviewer_open():
        ctl = get_controller()
        module_id = (request.form.get("module_id") or "").strip()
        module = ctl.module_by_id(module_id)
        if ctl.user is None or module is None or ctl.view.name not in ("lobby", "exam", "reviewer"):
            return redirect(_back_to(ctl))
        end_review_chat(client)
        # Without a chat the reviewer page falls back to the plain Q&A review
        handle, error = None, None
        if not enabled:
            error = DISABLED_MSG
        else:
            try:
                handle = client.start_session(module)
            except ReviewChatError as e:
                error = CONFIG_ERROR_MSG if e.config_error else str(e)
                print(f"[review] showing Q&A fallback for module {module.id}: {e}")
        session[CHAT_SESSION_KEY] = {"module_id": module.id, "handle": handle, "error": error}
        ctl.open_reviewer(module.id)
        return redirect(url_for(f"{bp.name}.reviewer_page"))

    @bp.get("/")
    def reviewer_page():
        ctl = get_controller()
        view = ctl.view
        if view.name != "reviewer":
            return redirect(url_for(f"{exam_bp}.index"))
        if ctl.restore():
            end_review_chat(client)
            return redirect(url_for(f"{exam_bp}.review_page"))
        module = ctl.module_by_id(view.module_id)
        chat = session.get(CHAT_SESSION_KEY) or {}
        chat_active = client.has_session(chat.get("handle"))
        timed = view.return_to == "exam"
        return render_template(
            "reviewer.html",
            module=module,
            return_to=view.return_to,
            timed=timed,
            time_left=ctl.time_left(),
            chat_active=chat_active,
            fallback=not chat_active,
            fallback_error=chat.get("error"),
            # the answer key stays hidden while the exam clock is running
            show_answers=not timed,
            user=ctl.user,
        )

    @bp.post("/chat")
    def reviewer_chat():
        ctl = get_controller()
        payload = request.get_json(silent=True) or {}
        text = (payload.get("message") or request.form.get("message") or "").strip()
        if ctl.view.name != "reviewer":
            return jsonify({"ok": False, "reply_html": str(escape(NOT_ACTIVE_MSG))}), 409
        if not text:
            return jsonify({"ok": False, "reply_html": ""}), 400
        chat = session.get(CHAT_SESSION_KEY) or {}
        try:
            reply = client.send_message(chat.get("handle"), text)
        except ReviewChatError as e:
            return jsonify({"ok": False, "reply_html": str(render_reply(f"Sorry, I encountered an error: {e}"))})
        return jsonify({"ok": True, "reply_html": str(render_reply(reply))})

    @bp.post("/close")
    def reviewer_close():
        ctl = get_controller()
        end_review_chat(client)
        view = ctl.close_reviewer()
        if view.name == "exam":
            return redirect(url_for(f"{exam_bp}.exam_page"))
        if view.name == "review":
            return redirect(url_for(f"{exam_bp}.review_page"))
        return redirect(url_for(f"{exam_bp}.lobby"))

    return bp
