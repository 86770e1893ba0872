EXTRACTION_PROMPT = """
You are an expert Zettelkasten note extractor. Extract atomic notes that meet STRICT quality standards (NVQ >= {threshold}/10).

## QUALITY REQUIREMENTS (EVERY note MUST have ALL of these)

### 1. PURPOSE STATEMENT (REQUIRED - 3 points possible)
Start each note explaining WHY you're keeping it:
- MUST be first-person: "I am keeping this because..."
- MUST link to a user goal when relevant
- MUST explain how the note is actionable/useful

### 2. METADATA FIELDS (REQUIRED - need at least 3 of 4)
- status: "Seed" (raw info), "Sapling" (synthesized), or "Evergreen" (fundamental truth)
- noteType: "Logic" (why/reasoning), "Technical" (how-to), or "Reflection" (self-observation)
- stakeholder: who benefits from this note. Common: "Self", "Future Users", "AI Agent", but it can be ANY specific person, team or group mentioned in the text
- projectLink: link to a project if relevant (format: "[[Project/Name]]")

### 3. FUNCTIONAL TAGS (REQUIRED - use instead of topic tags)
Use action-based tags with prefixes, NOT generic topic words:
- "#task/research", "#task/implement", "#task/review", "#decision/technical"
- "#skill/typescript", "#skill/accessibility", "#skill/ux"
- "#insight/core", "#insight/stale", "#insight/emerging"
- "#project/writing-ui", "#project/<name>"

FORBIDDEN: single-word topic tags like #accessibility, #react, #testing, #api, #design
At most 5 tags per note.

### 4. MEANINGFUL CONNECTIONS (REQUIRED - at least 2)
Every note MUST have at least 2 connections with SPECIFIC relationship types:

**Upward links** (to MOCs or Projects):
- "upward": hierarchical parent (e.g. "[[MOC/Accessibility]]")

**Sideways links** (to related concepts - USE SPECIFIC TYPES):
- "supports": this note provides evidence/reasoning FOR the target
- "contradicts": this note provides evidence/reasoning AGAINST the target
- "extends": this note builds upon or elaborates the target
- "example_of": this note is a concrete instance of the target concept
- "sideways": loosely related (USE SPARINGLY)

When an idea challenges or provides counter-evidence to another concept, USE "contradicts".

### 5. ORIGINAL SYNTHESIS (REQUIRED)
Notes MUST contain personal interpretation, not just facts:
- Include phrases like "I realized...", "This means for me...", "My takeaway..."
- Connect to the writer's specific context/project
- AVOID Wikipedia-style generic definitions
{context_sections}

## OUTPUT FORMAT

Respond with valid JSON only:
{
  "notes": [
    {
      "title": "Clear, descriptive title (max 10 words)",
      "purposeStatement": "I am keeping this because [specific reason linked to goal]...",
      "content": "The atomic idea with original synthesis. I realized that... This means for my project...",
      "status": "Seed" | "Sapling" | "Evergreen",
      "noteType": "Logic" | "Technical" | "Reflection",
      "stakeholder": "Self" | "Future Users" | "AI Agent",
      "projectLink": "[[Project/Name]]" or null,
      "tags": ["#task/implement", "#skill/accessibility", "#project/writing-ui"],
      "connections": [
        { "targetTitle": "[[MOC/Accessibility]]", "type": "upward", "strength": 0.9 },
        { "targetTitle": "Progressive Enhancement", "type": "supports", "strength": 0.85 }
      ],
      "consolidate_with": null,
      "merged_content": null
    }
  ]
}

## CRITICAL RULES

1. QUALITY OVER QUANTITY: if an idea doesn't warrant a quality note, DO NOT extract it.
2. NO EMPTY FIELDS: every note must have purposeStatement, status, noteType, stakeholder and at least 2 tags.
3. NO TOPIC TAGS: tags must have prefixes (#task/, #skill/, #insight/, #project/).
4. MEANINGFUL CONNECTIONS: at least 2 connections, one upward and one sideways. Use the EXACT titles of existing notes when linking to them.
5. CONSOLIDATION: if a note substantially overlaps with an existing note, set "consolidate_with" to that note's exact title AND set "merged_content" to an enriched version combining old + new insights (richer than either alone).

If the text doesn't contain extractable atomic ideas that can meet these standards, return: {"notes": []}
"""


REFINEMENT_PROMPT = """
This note scored {total}/10 on the NVQ (Note Vitality Quotient) and needs improvement to reach the {threshold}/10 passing threshold.

## ORIGINAL NOTE

**Title:** {title}

**Purpose Statement:** {purpose_statement}

**Content:** {content}

**Status:** {status}
**Type:** {note_type}
**Stakeholder:** {stakeholder}
**Project:** {project}

**Tags:** {tags}

**Connections:** {connections}

## SCORE BREAKDOWN
{score_table}

## ISSUES TO FIX
{issues_list}

## AVAILABLE CONTEXT FOR IMPROVEMENT
{context_section}

## YOUR TASK

Improve this note to score >= {threshold}/10 while preserving the core idea. You MUST:

{fix_instructions}

Return ONLY the IMPROVED note in this exact JSON format:
{
  "title": "...",
  "purposeStatement": "I am keeping this because...",
  "content": "...",
  "status": "Seed" | "Sapling" | "Evergreen",
  "noteType": "Logic" | "Technical" | "Reflection",
  "stakeholder": "Self" | "Future Users" | "AI Agent",
  "projectLink": "[[Project/...]]" | null,
  "tags": ["#task/...", "#skill/..."],
  "connections": [
    { "targetTitle": "[[MOC/...]]", "type": "upward", "strength": 0.9 },
    { "targetTitle": "Related Concept", "type": "supports", "strength": 0.8 }
  ]
}

IMPORTANT:
- Do NOT change the core idea of the note
- Do NOT remove valuable content
- Focus ONLY on improving the failing components
- Ensure ALL required fields are present
"""
