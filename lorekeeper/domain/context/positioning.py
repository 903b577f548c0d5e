from typing import Dict, List, Tuple
from collections import defaultdict

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from lorekeeper.domain.models.entry import MessageRole, Position
from lorekeeper.domain.models.activation import Candidate, ContextAssembly, ContextBlock

# Canonical rendering order of positions; at_depth blocks come last
POSITION_ORDER = {
    Position.SYSTEM_TOP: 0,
    Position.BEFORE_CHARACTER: 1,
    Position.AFTER_CHARACTER: 2,
    Position.BEFORE_EXAMPLES: 3,
    Position.AFTER_EXAMPLES: 4,
    Position.SYSTEM_BOTTOM: 5,
    Position.AT_DEPTH: 6,
}

_ROLE_MESSAGES = {
    MessageRole.SYSTEM: SystemMessage,
    MessageRole.USER: HumanMessage,
    MessageRole.ASSISTANT: AIMessage,
}


class PositioningAssembler:
    """Arranges admitted entries into ordered context blocks"""

    def __init__(self, separator: str = "\n\n"):
        self.separator = separator

    def assemble(self, admitted: List[Candidate]) -> List[ContextBlock]:
        """Group by position (and depth/role), order within groups, render blocks"""

        groups: Dict[Tuple[Position, int, MessageRole], List[Candidate]] = defaultdict(list)
        for candidate in admitted:
            positioning = candidate.entry.positioning
            depth = positioning.depth if positioning.position == Position.AT_DEPTH else 0
            groups[(positioning.position, depth, positioning.role)].append(candidate)

        blocks = []
        for (position, depth, role), members in groups.items():
            members.sort(key=lambda c: (c.entry.positioning.order, -c.score, c.entry_id))
            blocks.append(ContextBlock(
                position=position,
                role=role,
                order=members[0].entry.positioning.order,
                depth=depth,
                rendered_text=self.separator.join(self.format_entry(c) for c in members),
                token_cost=sum(c.token_cost for c in members),
                entry_ids=[c.entry_id for c in members],
            ))

        # Deeper blocks are inserted further back, so they come first
        blocks.sort(key=lambda b: (POSITION_ORDER[b.position], -b.depth, b.order, b.role.value))
        return blocks

    @staticmethod
    def format_entry(candidate: Candidate) -> str:
        """Label an entry with its first tag when it has one"""

        content = candidate.entry.content
        if candidate.entry.tags:
            return f"[{sorted(candidate.entry.tags)[0]}]\n{content}"
        return content


def splice_depth_blocks(messages: List[BaseMessage], blocks: List[ContextBlock]) -> List[BaseMessage]:
    """Return a copy of the history with at_depth blocks inserted `depth` messages from the end"""

    result = list(messages)
    total = len(messages)
    # Deepest first so earlier inserts do not shift later insertion points
    depth_blocks = sorted(
        (b for b in blocks if b.position == Position.AT_DEPTH),
        key=lambda b: (-b.depth, b.order),
    )
    inserted = 0
    for block in depth_blocks:
        insert_at = max(0, total - block.depth) + inserted
        result.insert(insert_at, _ROLE_MESSAGES[block.role](content=block.rendered_text))
        inserted += 1
    return result


def describe_assembly(assembly: ContextAssembly) -> str:
    """Human-readable dump of an assembly for debugging"""

    lines = [
        "=== Knowledge Activation ===",
        f"Conversation: {assembly.conversation_id} @ {assembly.message_index}",
        f"Tokens: {assembly.total_tokens}/{assembly.budget}",
        "",
    ]
    for block in assembly.blocks:
        lines.append(f"{block.position.value.upper()} depth={block.depth} role={block.role.value} ({len(block.entry_ids)}):")
        for entry_id in block.entry_ids:
            lines.append(f"  - {entry_id}")

    excluded = [c for c in assembly.decisions if not c.was_included]
    if excluded:
        lines.append("EXCLUDED:")
        for candidate in excluded:
            lines.append(
                f"  - {candidate.entry_id} [{candidate.method.value}] "
                f"score={candidate.score:.2f} reason={candidate.exclusion_reason.value}"
            )
    return "\n".join(lines)
