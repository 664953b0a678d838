"""
Bounds conversation history to a token/message budget for prompt assembly.

Compaction only ever produces a transient copy. The persisted history
passed in is never modified.
"""

import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence

from ..models.core import ConversationMessage, Role
from ..utils.logging_config import get_logger
from .token_budget import estimate_tokens

logger = get_logger(__name__)

SUMMARY_PROMPT = ('Summarize this conversation history into key points (2-3 sentences max):\n'
                  'Focus on: emotional themes, goals mentioned, progress made, important details.\n\n'
                  'Conversation:\n{conversation}\n\nSummary:')
SUMMARY_TEMPERATURE = 0.5
SUMMARY_MAX_TOKENS = 200
EXTRACTIVE_TOPIC_LIMIT = 5

_CLAUSE_BOUNDARY = re.compile(r'[.!?]')

# Completion callable: (prompt, temperature=..., max_tokens=...) -> text
Summarizer = Callable[..., Awaitable[str]]


@dataclass
class CompactedHistory:
    recent_messages: List[ConversationMessage]
    excluded_messages: List[ConversationMessage] = field(default_factory=list)
    truncated_count: int = 0
    total_tokens: int = 0
    summary: Optional[str] = None


def compact(messages: Sequence[ConversationMessage], max_tokens: int, max_messages: int) -> CompactedHistory:
    """
    Select the newest messages that fit the budget.

    Args:
        messages: Full session history, oldest first
        max_tokens: Estimated token budget for the returned messages
        max_messages: Maximum number of messages returned

    Returns:
        CompactedHistory whose recent_messages is a new list
    """
    history = list(messages)
    recent = history[-max_messages:] if max_messages > 0 else []
    count_excluded = len(history) - len(recent)
    total = sum(estimate_tokens(message.content) for message in recent)

    if total <= max_tokens:
        return CompactedHistory(recent_messages=recent,
                                excluded_messages=history[:count_excluded],
                                truncated_count=count_excluded,
                                total_tokens=total)

    kept: List[ConversationMessage] = []
    tokens = 0
    for message in reversed(recent):
        cost = estimate_tokens(message.content)
        if tokens + cost > max_tokens:
            break
        kept.append(message)
        tokens += cost
    kept.reverse()

    excluded = history[:len(history) - len(kept)]
    logger.debug(f'Compacted history: kept {len(kept)} of {len(history)} messages ({tokens} tokens)')
    return CompactedHistory(recent_messages=kept,
                            excluded_messages=excluded,
                            truncated_count=len(excluded),
                            total_tokens=tokens)


def extractive_summary(messages: Sequence[ConversationMessage]) -> str:
    """Deterministic summary from the first clause of the earliest user messages."""
    if not messages:
        return ''
    user_messages = [m for m in messages if m.role == Role.USER][:EXTRACTIVE_TOPIC_LIMIT]
    topics = []
    for message in user_messages:
        content = message.content or ''
        first = _CLAUSE_BOUNDARY.split(content)[0] or content[:100]
        first = first.strip()
        if first:
            topics.append(first)
    if topics:
        return f"Earlier conversation covered: {'; '.join(topics)}."
    return f'Previous conversation had {len(messages)} messages.'


def build_summary_prompt(messages: Sequence[ConversationMessage]) -> str:
    conversation = '\n\n'.join(f'{idx}. {m.role.value}: {m.content}' for idx, m in enumerate(messages, start=1))
    return SUMMARY_PROMPT.format(conversation=conversation)


async def summarize(messages: Sequence[ConversationMessage],
                    summarizer: Optional[Summarizer] = None,
                    threshold: int = 0) -> str:
    """
    Summarize excluded messages, falling back to extraction.

    Args:
        messages: The excluded prefix of the history
        summarizer: Completion callable routed through the provider queue
        threshold: Minimum number of messages before the provider is asked

    Returns:
        Summary text, empty only when messages is empty
    """
    if not messages:
        return ''
    if summarizer is not None and len(messages) > threshold:
        try:
            summary = (await summarizer(build_summary_prompt(messages),
                                        temperature=SUMMARY_TEMPERATURE,
                                        max_tokens=SUMMARY_MAX_TOKENS) or '').strip()
            if summary:
                logger.debug(f'Generated provider summary for {len(messages)} messages')
                return summary
        except Exception as e:
            logger.warning(f'Failed to generate provider summary, using extraction: {e}')
    return extractive_summary(messages)


async def compact_and_summarize(messages: Sequence[ConversationMessage],
                                max_tokens: int,
                                max_messages: int,
                                summarizer: Optional[Summarizer] = None,
                                threshold: int = 0) -> CompactedHistory:
    compacted = compact(messages, max_tokens, max_messages)
    if compacted.truncated_count > 0:
        compacted.summary = await summarize(compacted.excluded_messages, summarizer, threshold)
    return compacted


def format_for_prompt(summary: Optional[str], recent_messages: Sequence[ConversationMessage]) -> str:
    conversation = ''
    if summary:
        conversation += f'**Summary of earlier conversation:**\n{summary}\n\n'
    if recent_messages:
        conversation += '**Recent conversation:**\n'
        conversation += '\n'.join(f"{'User' if m.role == Role.USER else 'Hope'}: {m.content or ''}"
                                  for m in recent_messages)
    return conversation
