"""Localized prompt fragments used by the workflow engine."""

from datetime import date
from typing import Dict

DEFAULT_LOCALE = "zh"

LANGUAGE_INSTRUCTIONS: Dict[str, str] = {
    "zh": "请使用中文回复用户。",
    "en": "Please respond to the user in English.",
}

DATE_LABELS: Dict[str, str] = {
    "zh": "## 当前时间\n今天是",
    "en": "## Current Date\nToday is",
}

USER_INFO_LABELS: Dict[str, str] = {
    "zh": "## 当前用户信息",
    "en": "## Current User Info",
}

PLAN_SUFFIXES: Dict[str, str] = {
    "en": """
## Workflow Instructions (Must Follow Strictly)
You are in the **planning phase**. Your tasks are:
1. Analyze the user's request
2. Determine which tools need to be called to collect information or perform actions
3. Call **all** needed tools at once (do not split into multiple rounds)

Important rules:
- Think carefully, then list all tool calls at once
- Each tool should be called at most once
- If no tools are needed, reply to the user directly
- Do not explain which tools you are calling; just call them""",
    "zh": """
## 工作流指令（必须严格遵守）
你正处于 **规划阶段**。你的任务是：
1. 分析用户的需求
2. 判断需要调用哪些工具来收集信息或执行操作
3. **一次性** 调用所有需要的工具（不要分多轮）

重要规则：
- 仔细思考后，一次性列出所有需要的工具调用
- 每种工具最多调用一次
- 如果不需要任何工具，直接回复用户即可
- 不要在回复中解释"我要调用什么工具"，直接调用即可""",
}

SOLVE_SUFFIXES: Dict[str, str] = {
    "en": """
## Workflow Instructions (Must Follow Strictly)
You are in the **summarization phase**. All tools have been executed and their results are in the conversation history.
Your task is: based on all tool results, generate a complete, friendly, well-organized **English** response.

Important rules:
- **Never** call any tools again
- Generate the response directly based on existing tool results
- If a tool failed, skip that content or inform the user
- The response should be complete and organized, and must not omit important information
- If tool results contain search results, cite them and include the source links""",
    "zh": """
## 工作流指令（必须严格遵守）
你正处于 **总结阶段**。所有工具已经执行完毕，结果已包含在对话历史中。
你的任务是：基于所有工具返回的数据，生成一个完整、友好、有条理的中文回复。

重要规则：
- **绝对不要** 再调用任何工具
- 直接基于已有的工具结果生成回复
- 如果某个工具执行失败，跳过相关内容或告知用户
- 回复要完整、有条理，不要遗漏重要信息
- 如果工具结果中包含搜索结果，引用其中的信息并附上来源链接""",
}


def normalize_locale(locale: str | None, default: str = DEFAULT_LOCALE) -> str:
    if locale in LANGUAGE_INSTRUCTIONS:
        return locale
    return default if default in LANGUAGE_INSTRUCTIONS else DEFAULT_LOCALE


def format_date(today: date, locale: str) -> str:
    if locale == "en":
        return f"{today:%B} {today.day}, {today.year}"
    return f"{today.year}年{today.month}月{today.day}日"
