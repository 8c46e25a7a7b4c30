"""
ThreadRAG - Prompt Templates
=============================
Centralised prompt and rendering templates for the answer generator and
the archival engine.  All user-facing text lives here so it can be
versioned and reviewed independently of application logic.

Exports
-------
GROUNDED_PROMPT_HEADER, FALLBACK_PROMPT_HEADER, THREAD_CONTEXT_BLOCK,
GROUNDED_PROMPT_TEMPLATE, FALLBACK_PROMPT_TEMPLATE,
SOURCE_BLOCK_TEMPLATE, SOURCE_SEPARATOR, SOURCE_LABEL_*,
ARCHIVE_HEADER_TEMPLATE, ARCHIVE_TURN_TEMPLATE,
DELETE_NOT_CONFIRMED_TEMPLATE, DELETE_SUCCESS_TEMPLATE.
"""

# ══════════════════════════════════════════════════════════════════════
#  THREAD CONTEXT (optional, shared by both prompts)
# ══════════════════════════════════════════════════════════════════════

THREAD_CONTEXT_BLOCK: str = """Thread Context:
- Thread: {thread_title}
- Total Conversations: {conversation_count}
- Last Activity: {last_activity}

"""


# ══════════════════════════════════════════════════════════════════════
#  GROUNDED PROMPT (≥ 1 retrieved source)
# ══════════════════════════════════════════════════════════════════════

GROUNDED_PROMPT_HEADER: str = """You are a helpful AI assistant that answers questions based on the provided context. Use only the information from the sources below to answer the user's question. If the sources don't contain enough information to answer the question, say so.

"""

GROUNDED_PROMPT_TEMPLATE: str = """Context Sources:
{context}

User Question: {query}

Instructions:
1. Answer the question based only on the provided context
2. Be concise but comprehensive
3. If you reference specific information, mention which source it came from
4. If the context doesn't contain enough information, acknowledge this limitation
5. Use a helpful and professional tone
6. Consider the thread context when providing relevant responses

Answer:"""


# ══════════════════════════════════════════════════════════════════════
#  FALLBACK PROMPT (no usable context)
# ══════════════════════════════════════════════════════════════════════

FALLBACK_PROMPT_HEADER: str = """You are a helpful AI assistant. The user has asked a question, but I don't have any relevant documents or previous conversations to reference for this specific query.

User Question: {query}

"""

FALLBACK_PROMPT_TEMPLATE: str = """Instructions:
1. Provide a helpful and informative response based on your general knowledge
2. Be honest about not having specific context from their documents or previous conversations
3. Offer to help them with related topics or suggest how they might find the information
4. Keep the response concise but helpful
5. Use a friendly and professional tone

Response:"""


# ══════════════════════════════════════════════════════════════════════
#  CONTEXT ASSEMBLY
# ══════════════════════════════════════════════════════════════════════

SOURCE_BLOCK_TEMPLATE: str = "[Source {index} - {label}]\n{content}"
SOURCE_SEPARATOR: str = "\n\n---\n\n"

SOURCE_LABEL_DOCUMENT: str = "Document: {title}"
SOURCE_LABEL_CHAT_HISTORY: str = "Chat History: {date} ({count} messages)"
SOURCE_LABEL_THREAD_ARCHIVE: str = "Thread Archive: {title}"
SOURCE_LABEL_UNKNOWN_TITLE: str = "Unknown"


# ══════════════════════════════════════════════════════════════════════
#  THREAD ARCHIVE RENDERING
# ══════════════════════════════════════════════════════════════════════

ARCHIVE_HEADER_TEMPLATE: str = """THREAD ARCHIVE: {title}
Created: {created_at}
Last Activity: {last_activity}
Total Conversations: {count}
Thread Status: {status}

CONVERSATION HISTORY:
====================
"""

ARCHIVE_TURN_TEMPLATE: str = """[{index}] {role} ({timestamp}):
{content}

"""


# ══════════════════════════════════════════════════════════════════════
#  DELETION MESSAGES
# ══════════════════════════════════════════════════════════════════════

DELETE_NOT_CONFIRMED_TEMPLATE: str = 'Deletion of thread "{title}" not confirmed. Set confirmed=True to proceed.'
DELETE_SUCCESS_TEMPLATE: str = 'Thread "{title}" successfully deleted and archived'
