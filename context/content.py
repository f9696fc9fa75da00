"""
Conversation copy: prompts, quick replies and canned replies.

Templates use ``{{name}}`` placeholders resolved from session user_data plus
``first_name``. Kept apart from the state machine so wording can change
without touching transition logic.
"""
from __future__ import annotations

UNIVERSITY = "Greenfield University"

MAJOR_OPTIONS = (
    "Business Administration",
    "Information Technology",
    "Design",
    "Languages",
    "Communications",
    "Other",
)
MAJOR_OTHER_SENTINEL = "Other"

CHANNEL_OPTIONS = ("Call", "Zalo", "Email")

TIMESLOT_OPTIONS = ("Today", "Evening", "Weekend", "Choose another time")
CUSTOM_TIME_SENTINEL = "Choose another time"

WELCOME_REPLIES = ("Yes, I'm interested", "Show me the majors", "Talk to a person")
NUDGE_REPLIES = ("Yes, keep my spot", "Maybe later")


# ── State prompts ─────────────────────────────────────────────

WELCOME = (
    "Hi {{first_name}} 👋 Welcome to " + UNIVERSITY + "! Would you like a study "
    "roadmap, tuition details and scholarship options for the major you're interested in?"
)
WELCOME_GENERIC = (
    "Hi there 👋 Welcome to " + UNIVERSITY + "! Would you like a study roadmap, "
    "tuition details and scholarship options for the major you're interested in?"
)
MAJOR = "Which major are you interested in?"
MAJOR_OTHER = "Please type the name of the major you have in mind."
PHONE = (
    "To send you the brochure, tuition and a matching scholarship, and to book a "
    "1-on-1 consultation, could I have your phone number? 📱\n\n"
    "We only use it for admissions advice. No spam."
)
CHANNEL = (
    "Thanks! I've noted {{phone_standardized}}. How would you like us to reach "
    "you: Call, Zalo or Email?"
)
TIMESLOT = "When is the best time for us to contact you?"
CUSTOM_TIME = "Type a time that suits you (for example: tomorrow 9am, Tuesday afternoon)."
COMPLETE = (
    "Great! We've booked {{timeslot}} for you via {{channel}}. An admissions advisor "
    "will reach out with the brochure, tuition and scholarship details for {{major}}.\n\n"
    "Thank you {{first_name}} for choosing " + UNIVERSITY + "! 🎓"
)
NUDGE = (
    "Are you still interested in the brochure and scholarships for {{major}}? "
    "I can hold a consultation slot for you today."
)
NUDGE_GENERIC = (
    "Are you still interested in our brochure and scholarships? "
    "I can hold a consultation slot for you today."
)


# ── Validation errors ─────────────────────────────────────────

MAJOR_ERROR = "Please choose a major from the list or type one."
MAJOR_OTHER_ERROR = "Please type a major name between 2 and 100 characters."
PHONE_ERROR = (
    "That number doesn't look right 😅. Please use the format 0xxxxxxxxx or +84xxxxxxxxx."
)
CHANNEL_ERROR = "Please choose Call, Zalo or Email."
TIMESLOT_ERROR = "Please pick one of the suggested times."
CUSTOM_TIME_ERROR = "Please describe a time between 3 and 100 characters."


# ── Resumption after a nudge ──────────────────────────────────

RESUME = {
    "major": "Great! Which major are you interested in?",
    "major_other": "Great! Please type the name of the major you have in mind.",
    "phone": "Great! Could you share your phone number so we can send the details?",
    "channel": "Great! How would you like us to reach you: Call, Zalo or Email?",
    "timeslot": "Great! When is the best time for us to contact you?",
    "custom_time": "Great! Type a time that suits you.",
}
RESUME_DEFAULT = "Thanks for continuing! Let's pick up where we left off."

CLOSING = (
    "No problem {{first_name}}! Whenever you're ready, come back and we'll help you "
    "with {{major}}. Have a great day! 👋"
)
CLOSING_GENERIC = (
    "No problem! Whenever you're ready, come back and we'll be happy to help. "
    "Have a great day! 👋"
)

ESCALATION = (
    "Sorry, I'm having trouble understanding. Our admissions team can help you "
    "directly at {{hotline}}. Let's start over whenever you're ready."
)

UNKNOWN_STATE = "Sorry, something went wrong. Let's start again."


# ── Major blurbs for AI context ───────────────────────────────

MAJOR_INFO = {
    "business administration": (
        "Business Administration covers management, marketing, finance and "
        "entrepreneurship, with company projects and mentoring from founders."
    ),
    "information technology": (
        "Information Technology builds skills in programming, web and mobile apps, data "
        "and systems. Graduates become software engineers, QA, DevOps or data specialists."
    ),
    "design": (
        "Design develops aesthetic thinking and skills in graphics, UI/UX, branding and "
        "illustration, with portfolio projects and studio connections."
    ),
    "languages": (
        "Languages focuses on communication, translation and business language skills, "
        "leading to roles in international companies, tourism and education."
    ),
    "communications": (
        "Communications trains content, PR, digital and media production, with real "
        "projects for brands."
    ),
}
MAJOR_INFO_GENERIC = (
    "Our flagship programs are Business Administration, Information Technology, "
    "Design, Languages and Communications, all built around practice and industry projects."
)


def major_info(major: str = "") -> str:
    key = (major or "").strip().lower()
    for name, blurb in MAJOR_INFO.items():
        if name in key:
            return blurb
    if key:
        return (
            f"{major.strip()} is a popular choice. We'll advise you on the study path, "
            "tuition and scholarships that fit."
        )
    return MAJOR_INFO_GENERIC

