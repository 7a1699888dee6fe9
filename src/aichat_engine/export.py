"""Export chat sessions to Markdown and JSON formats."""

import json

from .core import Session, message_to_dict


def session_to_markdown(session: Session) -> str:
    """Export a session and its messages as clean Markdown."""
    lines = [f"# {session.title}", ""]

    lines.append(f"**Created:** {session.created.isoformat()}")
    lines.append(f"**Updated:** {session.updated.isoformat()}")
    lines.append(f"**Messages:** {len(session.messages)}")
    lines.extend(["", "---", ""])

    for msg in session.messages:
        role_label = msg.role.capitalize()
        ts = f" ({msg.timestamp.strftime('%Y-%m-%d %H:%M')})"
        model = f" · {msg.model}" if msg.model else ""
        lines.append(f"## {role_label}{ts}{model}")
        lines.append("")
        lines.append(msg.content)
        for att in msg.attachments:
            lines.append(f"- [{att.name or att.kind}]({att.url})")
        for url in msg.video_urls:
            lines.append(f"- [video]({url})")
        lines.extend(["", "---", ""])

    return "\n".join(lines)


def session_to_json(session: Session) -> str:
    """Export a session and its messages as structured JSON."""
    data = {
        "session": {
            "id": session.id,
            "title": session.title,
            "message_count": len(session.messages),
            "created": session.created.isoformat(),
            "updated": session.updated.isoformat(),
        },
        "messages": [message_to_dict(m) for m in session.messages],
    }
    return json.dumps(data, indent=2, ensure_ascii=False)
