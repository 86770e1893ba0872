from typing import List

from extraction.nvq_types import CandidateConnection, ExtractionContext, NoteCandidate, NVQScore
from extraction.utils import Utils
from extraction_prompts.nvq_prompts import EXTRACTION_PROMPT, REFINEMENT_PROMPT

PROMPT_NOTES_LIMIT = 15
PROMPT_NOTE_PREVIEW = 100
PROMPT_TAGS_LIMIT = 20
REFINEMENT_NOTES_LIMIT = 10


class PromptBuilder(Utils):

    # -----------------------
    # Extraction
    # -----------------------

    def build_extraction_prompt(self, context: ExtractionContext, threshold: int = 7) -> str:
        return self.unsafe_string_format(
            EXTRACTION_PROMPT,
            threshold=threshold,
            context_sections=self._extraction_context_sections(context),
        )

    def _extraction_context_sections(self, context: ExtractionContext) -> str:
        sections: List[str] = []

        if context.goals:
            lines = "\n".join(
                f'- "{g.title}": {g.why_root or "No why-root defined"}' for g in context.goals
            )
            sections.append(f"\n## USER'S GOALS (link to these in purpose statements)\n{lines}")

        if context.moc_names:
            lines = "\n".join(f"- [[MOC/{m}]]" for m in context.moc_names)
            sections.append(f"\n## AVAILABLE MOCs (use for UPWARD links)\n{lines}")

        if context.project_names:
            lines = "\n".join(f"- [[Project/{p}]]" for p in context.project_names)
            sections.append(f"\n## AVAILABLE PROJECTS (use for UPWARD links)\n{lines}")

        if context.related_notes:
            lines = []
            for n in context.related_notes[:PROMPT_NOTES_LIMIT]:
                preview = n.content[:PROMPT_NOTE_PREVIEW]
                if len(n.content) > PROMPT_NOTE_PREVIEW:
                    preview += "..."
                lines.append(f'- "{n.title}": {preview}')
            sections.append(
                "\n## EXISTING NOTES (use for SIDEWAYS links, check for consolidation)\n" + "\n".join(lines)
            )

        functional = [t for t in context.common_tags if "/" in t]
        if functional:
            sections.append(
                "\n## EXISTING FUNCTIONAL TAGS (prefer these when applicable)\n"
                + ", ".join(functional[:PROMPT_TAGS_LIMIT])
            )

        return "\n".join(sections)

    # -----------------------
    # Refinement
    # -----------------------

    def build_refinement_prompt(
        self,
        note: NoteCandidate,
        score: NVQScore,
        issues: List[str],
        context: ExtractionContext,
        threshold: int = 7,
    ) -> str:
        return self.unsafe_string_format(
            REFINEMENT_PROMPT,
            print_unused_keys_report=False,
            total=score.total,
            threshold=threshold,
            title=note.title,
            purpose_statement=note.purpose_statement or "MISSING - This is required!",
            content=note.content,
            status=note.status or "MISSING",
            note_type=note.note_type or "MISSING",
            stakeholder=note.stakeholder or "MISSING",
            project=note.project or "None specified",
            tags=", ".join(note.tags) if note.tags else "MISSING",
            connections=self._format_connections(note.connections),
            score_table=self._score_table(score),
            issues_list="\n".join(f"- {i}" for i in issues) or "- (none reported)",
            context_section=self._refinement_context_section(context),
            fix_instructions=self._fix_instructions(score),
        )

    def _format_connections(self, connections: List[CandidateConnection]) -> str:
        if not connections:
            return "NONE - At least 2 required!"
        return ", ".join(f"{c.target_title} ({c.type}, {c.strength})" for c in connections)

    def _score_table(self, score: NVQScore) -> str:
        b = score.breakdown

        def label(value: int, needs_work: bool) -> str:
            if value == 0:
                return "FAILING"
            return "Needs work" if needs_work else "OK"

        rows = [
            "| Component    | Score | Max | Status |",
            "|--------------|-------|-----|--------|",
            f"| Why          | {b.why.score} | 3 | {label(b.why.score, b.why.score < 2)} |",
            f"| Metadata     | {b.metadata.score} | 2 | {label(b.metadata.score, False)} |",
            f"| Taxonomy     | {b.taxonomy.score} | 2 | {label(b.taxonomy.score, b.taxonomy.score == 1)} |",
            f"| Connectivity | {b.connectivity.score} | 2 | {label(b.connectivity.score, b.connectivity.score == 1)} |",
            f"| Originality  | {b.originality.score} | 1 | {label(b.originality.score, False)} |",
            f"| **TOTAL**    | **{score.total}** | **10** | {'PASSING' if score.passing else 'FAILING'} |",
        ]
        return "\n".join(rows)

    def _refinement_context_section(self, context: ExtractionContext) -> str:
        sections: List[str] = []
        if context.goals:
            sections.append(
                "**User Goals (link in purpose statement):**\n"
                + "\n".join(f'- "{g.title}": {g.why_root}' for g in context.goals)
            )
        if context.moc_names:
            sections.append(
                "**Available MOCs (for upward links):**\n"
                + "\n".join(f"- [[MOC/{m}]]" for m in context.moc_names)
            )
        if context.project_names:
            sections.append(
                "**Available Projects (for upward links):**\n"
                + "\n".join(f"- [[Project/{p}]]" for p in context.project_names)
            )
        if context.related_notes:
            sections.append(
                "**Related Notes (for sideways links):**\n"
                + "\n".join(f'- "{n.title}"' for n in context.related_notes[:REFINEMENT_NOTES_LIMIT])
            )
        return "\n\n".join(sections) if sections else "No additional context available."

    def _fix_instructions(self, score: NVQScore) -> str:
        b = score.breakdown
        out: List[str] = []

        if b.why.score == 0:
            out.append(
                "1. **Fix Purpose Statement (Why):**\n"
                '   - Add a first-person statement: "I am keeping this because..."\n'
                "   - Link it to one of the user's goals\n"
                "   - Make it actionable (explain what you can DO with this knowledge)"
            )
        elif b.why.score < 3:
            if not b.why.has_first_person:
                out.append('1. **Improve Purpose Statement:** Add first-person language ("I am keeping this because...")')
            if not b.why.links_to_personal_goal:
                out.append("1. **Link to Goal:** Connect the purpose statement to a user goal")
            if not b.why.is_actionable:
                out.append("1. **Make Actionable:** Explain how this knowledge can be applied")

        if b.metadata.score == 0:
            out.append(
                "2. **Add Missing Metadata:**\n"
                '   - status: Choose "Seed", "Sapling", or "Evergreen"\n'
                '   - noteType: Choose "Logic", "Technical", or "Reflection"\n'
                '   - stakeholder: Choose "Self", "Future Users", or "AI Agent"\n'
                "   - projectLink: Add if relevant"
            )
        elif b.metadata.fields_present < 3:
            missing = [
                name for name, present in (
                    ("status", b.metadata.has_status),
                    ("noteType", b.metadata.has_type),
                    ("stakeholder", b.metadata.has_stakeholder),
                )
                if not present
            ]
            out.append(f"2. **Add Missing Metadata Fields:** {', '.join(missing)}")

        if b.taxonomy.score == 0:
            out.append(
                "3. **Fix Tags:**\n"
                "   - Replace topic tags with functional tags\n"
                "   - Use prefixes: #task/, #skill/, #insight/, #project/\n"
                '   - Examples: "#task/implement", "#skill/accessibility", "#insight/core"'
            )
        elif b.taxonomy.topic_tags > 0:
            out.append("3. **Convert Topic Tags:** Replace single-word tags with functional prefixed tags")
        if b.taxonomy.exceeds_limit:
            out.append("3. **Trim Tags:** Keep at most 5 tags")

        if b.connectivity.score == 0:
            out.append(
                "4. **Add Required Links:**\n"
                '   - Add an UPWARD link to a MOC or Project (e.g. "[[MOC/Accessibility]]")\n'
                "   - Add a SIDEWAYS link to a related concept"
            )
        elif not b.connectivity.meets_minimum:
            if not b.connectivity.has_upward_link:
                out.append("4. **Add Upward Link:** Connect to a MOC or Project")
            if not b.connectivity.has_sideways_link:
                out.append("4. **Add Sideways Link:** Connect to a related concept")

        if b.originality.score == 0:
            out.append(
                "5. **Add Original Synthesis:**\n"
                '   - Add personal interpretation: "I realized...", "This means for me..."\n'
                "   - Remove or contextualize pure Wikipedia-style facts\n"
                "   - Connect to your specific situation/project"
            )

        return "\n\n".join(out) if out else "Review all components and ensure quality standards are met."
