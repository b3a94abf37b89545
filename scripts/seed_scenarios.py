"""Seed the 5 relationship scenarios (and their options) into the catalog."""
import asyncio

from sqlalchemy import select

from app.database import dispose_engine, get_session_factory
from app.models.questionnaire import Scenario, ScenarioOption


def _vector(openness: float, warmth: float, independence: float, stability: float) -> dict:
    return {
        "openness": openness,
        "warmth": warmth,
        "independence": independence,
        "stability": stability,
    }


SCENARIOS = [
    {
        "title": "The forgotten anniversary",
        "description": (
            "Your partner forgot your anniversary and made plans with friends instead. "
            "They only realise it late that evening. What do you do?"
        ),
        "category": "conflict",
        "options": [
            ("A", "Tell them calmly how it made you feel and talk it through", _vector(0.6, 0.8, 0.2, 0.7)),
            ("B", "Let it go tonight and bring it up when you've both cooled down", _vector(0.3, 0.5, 0.4, 0.9)),
            ("C", "Make your own plans; you don't need a date to celebrate", _vector(0.7, 0.2, 0.9, 0.4)),
        ],
    },
    {
        "title": "The dream job abroad",
        "description": (
            "You're offered your dream job, but it's in another country and would mean "
            "two years of long distance. How do you decide?"
        ),
        "category": "career",
        "options": [
            ("A", "Take it; a strong relationship survives distance", _vector(0.8, 0.4, 0.9, 0.3)),
            ("B", "Decide together, even if it means turning it down", _vector(0.4, 0.9, 0.2, 0.7)),
            ("C", "Negotiate a remote or delayed start first", _vector(0.6, 0.6, 0.5, 0.8)),
        ],
    },
    {
        "title": "The free weekend",
        "description": (
            "You both have a completely free weekend with no obligations. "
            "What sounds best?"
        ),
        "category": "lifestyle",
        "options": [
            ("A", "A spontaneous trip somewhere neither of you has been", _vector(0.9, 0.5, 0.6, 0.2)),
            ("B", "Cooking at home, a film, and a lazy Sunday", _vector(0.2, 0.8, 0.3, 0.9)),
            ("C", "Each doing your own thing, then catching up over dinner", _vector(0.5, 0.4, 0.9, 0.6)),
        ],
    },
    {
        "title": "Five years from now",
        "description": (
            "Picture the two of you five years from now. Which picture feels most right?"
        ),
        "category": "future",
        "options": [
            ("A", "Settled in a home of our own, maybe with kids", _vector(0.2, 0.9, 0.2, 0.9)),
            ("B", "Still exploring: new cities, new projects, no fixed plan", _vector(0.9, 0.5, 0.7, 0.2)),
            ("C", "Both thriving in our careers, building something together", _vector(0.6, 0.6, 0.6, 0.7)),
        ],
    },
    {
        "title": "The unread message",
        "description": (
            "Your partner's phone lights up with a message from an ex while they're "
            "in the shower. How do you react?"
        ),
        "category": "trust",
        "options": [
            ("A", "Ignore it; I trust them completely", _vector(0.5, 0.7, 0.6, 0.9)),
            ("B", "Mention it casually later and see what they say", _vector(0.6, 0.6, 0.4, 0.6)),
            ("C", "Ask about it straight away; honesty matters most to me", _vector(0.4, 0.5, 0.3, 0.4)),
        ],
    },
]


async def seed():
    async with get_session_factory()() as session:
        for order, data in enumerate(SCENARIOS, start=1):
            existing = await session.execute(
                select(Scenario.id).where(Scenario.category == data["category"])
            )
            if existing.scalar_one_or_none() is not None:
                print(f"  Scenario {data['category']!r} already exists, skipping.")
                continue

            scenario = Scenario(
                title=data["title"],
                description=data["description"],
                category=data["category"],
                display_order=order,
            )
            scenario.options = [
                ScenarioOption(
                    option_code=code,
                    option_text=text,
                    display_order=position,
                    personality_vector=vector,
                )
                for position, (code, text, vector) in enumerate(data["options"], start=1)
            ]
            session.add(scenario)
            print(f"  Seeded scenario {order}: {data['category']}")
        await session.commit()
    await dispose_engine()
    print("Done seeding scenarios.")


if __name__ == "__main__":
    asyncio.run(seed())
