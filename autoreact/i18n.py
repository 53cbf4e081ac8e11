"""User-facing message catalog.

Observation prefixes, loop fallbacks and REST status messages are looked
up here so the language setting changes what the model and the client see.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en"

_MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "react.tool_call_success": "Tool call succeeded",
        "react.tool_call_failed": "Tool call failed",
        "react.action_start": "Executing tool...",
        "react.aborted": "The task was aborted by the user.",
        "react.max_steps_reached": "Reached the maximum number of reasoning steps ({0}) without a final answer.",
        "react.max_steps_reached_hint": "You can try the following:",
        "react.max_steps_reached_hint_1": "1. Split the request into smaller questions",
        "react.max_steps_reached_hint_2": "2. Provide more specific parameters or context",
        "react.max_steps_reached_hint_3": "3. Continue the conversation to resume from the current progress",
        "ai.language_instruction": "Reply in English unless the user writes in another language.",
        "stream.task_aborted": "Task aborted",
        "stream.content_process_error": "Failed to process streamed content",
        "stream.request_timeout": "Request timed out",
        "stream.connection_error": "Connection error: {0}",
        "task.abort_success": "Task aborted",
        "task.abort_not_found": "Task not found or already finished",
        "task.missing_parameters": "Missing required parameters: sessionId and toolCall",
        "task.tool_result_received": "Tool result received",
        "task.no_matching_tool": "No pending tool call matches this result",
    },
    "zh_CN": {
        "react.tool_call_success": "工具调用成功",
        "react.tool_call_failed": "工具调用失败",
        "react.action_start": "正在执行工具...",
        "react.aborted": "任务已被用户终止。",
        "react.max_steps_reached": "已达到最大推理步数（{0}），仍未得到最终答案。",
        "react.max_steps_reached_hint": "您可以尝试：",
        "react.max_steps_reached_hint_1": "1. 将问题拆分为更小的问题",
        "react.max_steps_reached_hint_2": "2. 提供更具体的参数或上下文",
        "react.max_steps_reached_hint_3": "3. 继续对话，从当前进度接着处理",
        "ai.language_instruction": "请使用简体中文回答，除非用户使用其他语言。",
        "stream.task_aborted": "任务已终止",
        "stream.content_process_error": "处理流式内容失败",
        "stream.request_timeout": "请求超时",
        "stream.connection_error": "连接错误：{0}",
        "task.abort_success": "任务已终止",
        "task.abort_not_found": "任务不存在或已结束",
        "task.missing_parameters": "缺少必要参数：sessionId 和 toolCall",
        "task.tool_result_received": "已收到工具结果",
        "task.no_matching_tool": "没有与该结果匹配的待处理工具调用",
    },
}


def supported_languages() -> list[str]:
    return sorted(_MESSAGES)


class Translator:
    """Looks up catalog messages for one language.

    Unknown languages fall back to English; unknown keys return the key
    itself so a missing entry is visible instead of silently empty.
    """

    def __init__(self, language: str | None = None) -> None:
        language = language or DEFAULT_LANGUAGE
        if language not in _MESSAGES:
            base = language.split("_")[0]
            match = next((lang for lang in _MESSAGES if lang.split("_")[0] == base), None)
            if match is None:
                logger.warning("Unsupported language %r, falling back to %s", language, DEFAULT_LANGUAGE)
                match = DEFAULT_LANGUAGE
            language = match
        self.language = language

    def get(self, key: str, *args: object) -> str:
        if not key:
            return ""
        message = _MESSAGES[self.language].get(key)
        if message is None:
            message = _MESSAGES[DEFAULT_LANGUAGE].get(key, key)
        if not args:
            return message
        try:
            return message.format(*args)
        except (IndexError, KeyError):
            return message

    def all_messages(self) -> dict[str, str]:
        merged = dict(_MESSAGES[DEFAULT_LANGUAGE])
        merged.update(_MESSAGES[self.language])
        return merged
