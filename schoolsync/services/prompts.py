"""
Prompt templates for the date pre-filter, date extraction and email summaries.

Placeholders in single braces ({subject}) are filled at call time; literal
JSON braces are doubled so ChatPromptTemplate leaves them alone.
"""

from langchain_core.prompts import ChatPromptTemplate

CLASSIFICATION_SYSTEM = (
    "You triage school emails for a parent's calendar. Return only valid JSON."
)

CLASSIFICATION_HUMAN = """Decide whether this school email contains actionable date or time information that parents should see.

Email Subject: {subject}
Email From: {sender}
Sent Date: {sent_date}
Email Body: {body}...

Return ONLY JSON:
{{
  "hasDateContent": true,
  "confidence": 0.9,
  "reasoning": "short explanation"
}}

Look carefully for:
- Calendar sections or event listings ("MARK YOUR CALENDAR", "UPCOMING EVENTS", "SAVE THE DATE")
- Cafeteria or lunch menus listed by day of the week
- Assignment due dates, test dates, project deadlines
- Meetings, sports, performances, field trips, conferences
- School breaks, early dismissals, holidays
- Any dates with month names or day-of-week patterns

Answer true if ANY of these appear, even late in the email."""

EXTRACTION_SYSTEM = (
    "You are an assistant that extracts important dates and events from school emails. "
    "Focus on academic deadlines, events, meetings, sports, trips and other "
    "time-sensitive information parents need on a calendar. Return only valid JSON."
)

EXTRACTION_HUMAN = """Extract all important dates from this school email.

Email Details:
- Sent Date: {sent_date}
- From: {sender}
- Subject: {subject}

Email Content (cleaned from HTML):
{body}

Instructions:
1. Focus on school-related events such as:
   - Assignment deadlines and test dates
   - Parent-teacher conferences and meetings
   - School events, performances, sports, field trips
   - Holidays, early dismissals, registration deadlines
   - Lunch menus listed by weekday (one event per day, titled "Lunch: <item>")
2. Convert relative dates (like "this Friday", "next week") to absolute dates based on the sent date: {sent_date}
3. Include only dates strictly after the sent date.
4. Provide a confidence score between 0 and 1 for each event.
5. Use specific, meaningful titles and descriptions.

Return a JSON array with this exact structure:
[
  {{
    "title": "Event or deadline title",
    "date": "YYYY-MM-DD",
    "time": "HH:MM (optional, 24-hour)",
    "description": "Brief description of the event",
    "confidence": 0.95,
    "reasoning": "Which phrase in the email led to this date"
  }}
]

If no dates are found, return an empty array: []"""

SUMMARY_SYSTEM = (
    "You are an assistant that writes clean, well-structured summaries of school emails. "
    "Focus on key information, important dates and actionable items. Return only valid JSON."
)

SUMMARY_HUMAN = """Create a concise summary for this school email. Include the key points and details, including key dates.

Sent Date: {sent_date}
From: {sender}
Subject: {subject}
Body:
{body}

Output JSON:
{{
  "keyPoints": ["bullet highlighting the main updates"],
  "importantDates": [{{
    "date": "YYYY-MM-DD",
    "description": "what happens",
    "originalText": "quote from email"
  }}],
  "actionItems": ["what parents/students should do"],
  "categories": ["Academic", "Events"],
  "confidence": 0.9
}}

Keep the tone clear and warm. Use plain language and preserve any must-know instructions."""


EXTRACTION_PROMPT = ChatPromptTemplate.from_messages([
    ("system", EXTRACTION_SYSTEM),
    ("human", EXTRACTION_HUMAN),
])

SUMMARY_PROMPT = ChatPromptTemplate.from_messages([
    ("system", SUMMARY_SYSTEM),
    ("human", SUMMARY_HUMAN),
])

CLASSIFICATION_PROMPT = ChatPromptTemplate.from_messages([
    ("system", CLASSIFICATION_SYSTEM),
    ("human", CLASSIFICATION_HUMAN),
])
