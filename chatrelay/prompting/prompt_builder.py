"""Prompt assembly helpers for the optimize task.

This module is intentionally narrow: it only builds the message list sent to the
optimize fallback chain and scores the returned rewrite. Provider selection,
validation, and model invocation happen outside this module.

Design constraints:
    - Deterministic construction for identical inputs.
    - No hidden side effects (no I/O, no global state mutation).
"""

import re


# =========================================================
# OPTIMIZER INSTRUCTIONS
# =========================================================

OPTIMIZER_SYSTEM_PROMPT = (
    "You are an expert prompt engineer. Rewrite the prompt the user gives you so "
    "that it is clearer, more specific, and more effective.\n\n"
    "Principles:\n"
    "1. Keep the original intent unchanged while making the wording clearer.\n"
    "2. Add the context an assistant needs to understand the request.\n"
    "3. Prefer precise vocabulary and concrete descriptions.\n"
    "4. Give the request a clear logical structure.\n"
    "5. For technical questions, ask for the relevant technical details.\n"
    "6. For creative requests, state style and tone.\n"
    "7. Stay concise and avoid redundancy.\n\n"
    "Reply with the optimized prompt only, without explanations or prefixes."
)


def build_optimize_messages(prompt: str) -> tuple:
    """Build the role-tagged message list for one optimize request.

    Component order:
        1) `OPTIMIZER_SYSTEM_PROMPT` as the system message
        2) the original prompt wrapped in a short user instruction
    """
    user_message = (
        "Optimize the following prompt:\n\n"
        f"Original prompt:\n{prompt.strip()}\n\n"
        "Optimized prompt:"
    )
    return (
        {"role": "system", "content": OPTIMIZER_SYSTEM_PROMPT},
        {"role": "user", "content": user_message},
    )


# Words whose increased use suggests a more precise request (English + Chinese).
PRECISION_TERMS = (
    "specific", "detailed", "explicit", "requirement", "standard", "format", "style",
    "具体", "详细", "明确", "要求", "标准", "格式", "风格",
)


def _count(term: str, text: str) -> int:
    return len(re.findall(re.escape(term), text, flags=re.IGNORECASE))


def describe_improvements(original: str, optimized: str) -> list:
    """Heuristically list what a rewrite changed. Never returns an empty list."""
    improvements = []

    if len(optimized) > len(original) * 1.2:
        improvements.append("Added concrete details and context")

    if (":" in optimized or "：" in optimized) and not (":" in original or "：" in original):
        improvements.append("Improved structure and logical layering")

    if any(_count(term, optimized) > _count(term, original) for term in PRECISION_TERMS):
        improvements.append("Used more precise and professional wording")

    if ("?" in optimized or "？" in optimized) and not ("?" in original or "？" in original):
        improvements.append("Clarified the direction of the question")

    if not improvements:
        improvements.append("Improved clarity and accuracy of expression")

    return improvements
