"""Render exported conversations as Markdown and JSON."""

import json

from .core import context_to_dict, message_to_dict


def conversation_to_markdown(export: dict) -> str:
    """Render the output of ``export_conversation`` as readable Markdown."""
    context = export["context"]
    metadata = export["metadata"]
    lines = ["# Conversation", ""]

    if context.location:
        lines.append(f"**Location:** {context.location}")
    lines.append(f"**Timezone:** {context.timezone}")
    lines.append(f"**Exported:** {metadata['export_date'].isoformat()}")
    lines.append(f"**Messages:** {metadata['total_messages']}")
    lines.append(f"**Tokens:** {metadata['total_tokens']}")
    lines.extend(["", "---", ""])

    for msg in export["messages"]:
        role_label = msg.role.value.capitalize()
        ts = f" ({msg.timestamp.strftime('%Y-%m-%d %H:%M')})"
        lines.append(f"## {role_label}{ts}")
        lines.append("")
        if msg.is_summarized:
            lines.extend(["_Summarized_", ""])
        lines.append(msg.content)
        lines.extend(["", "---", ""])

    return "\n".join(lines)


def conversation_to_json(export: dict) -> str:
    """Render the output of ``export_conversation`` as JSON that can be imported again."""
    metadata = export["metadata"]
    data = {
        "messages": [message_to_dict(m) for m in export["messages"]],
        "context": context_to_dict(export["context"]),
        "metadata": {
            "export_date": metadata["export_date"].isoformat(),
            "total_messages": metadata["total_messages"],
            "total_tokens": metadata["total_tokens"],
            "version": metadata["version"],
        },
    }
    return json.dumps(data, indent=2, ensure_ascii=False)
