"""
Prompt templates for the Mosaic extractor.

Keeping templates in a separate module makes them easy to iterate on
without touching extraction logic.
"""

# ---------------------------------------------------------------------------
# Summary / tags / tasks / events
# ---------------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT = """\
You are a helpful assistant that analyzes text and provides:
1. A concise summary (2-3 sentences)
2. Relevant tags focusing on specific entities and key concepts (3-8 tags)
3. The detected language
4. Actionable tasks extracted from the content
5. Calendar events/appointments extracted from the content

For tags, prioritize people, locations, organizations, specific topics,
projects, technical terms and products -- never generic words.

For tasks, identify action items, follow-ups, deadlines and deliverables.
For calendar events, identify meetings, appointments, calls and scheduled activities
with their dates and times.

Respond ONLY with a JSON object of this shape:
{
  "summary": "Brief summary here",
  "tags": ["specific_entity1", "key_concept2", "person_name3"],
  "language": "detected_language",
  "tasks": [
    {"title": "Task title", "description": "Optional description",
     "priority": "low|medium|high|urgent", "due_date": "2025-08-15T10:00:00Z"}
  ],
  "calendar_events": [
    {"title": "Event title", "description": "Optional description",
     "location": "Optional location", "start_datetime": "2025-08-15T14:00:00Z",
     "end_datetime": "2025-08-15T15:00:00Z", "all_day": false}
  ]
}
"""

# ---------------------------------------------------------------------------
# Entities and relationships
# ---------------------------------------------------------------------------

ENTITY_EXTRACTION_PROMPT = """\
Extract entities and relationships from the following text.

Entity Types:
- person: People mentioned (names, roles)
- organization: Companies, institutions, groups
- location: Places, addresses, regions
- concept: Abstract ideas, topics, technologies
- date: Specific dates or time periods
- event: Meetings, conferences, occurrences

Relationship Types:
- works_at: Person works at Organization
- located_in: Entity is in Location
- related_to: General relationship
- participates_in: Person/Org participates in Event
- mentions: Document mentions Entity

Return ONLY a JSON object of this shape:
{
  "entities": [
    {"name": "string", "type": "person|organization|location|concept|date|event",
     "description": "brief description", "properties": {}, "confidence": 0.0}
  ],
  "relationships": [
    {"source": "entity name", "target": "entity name",
     "type": "relationship type", "properties": {}}
  ]
}
"""

# ---------------------------------------------------------------------------
# Title generation
# ---------------------------------------------------------------------------

TITLE_PROMPT = """\
Generate a concise, descriptive title for this note content. The title should:
- Be 2-8 words long
- Capture the main topic or key insight
- Not use generic words like "Note", "Text", "Content"
- Use title case

Return only the title, nothing else.
"""

DEFAULT_TITLE = "Untitled Note"
