"""
questboard.database.seed — Default Catalogue
=============================================

Inserts the default badges, missions and feature unlocks.  Rows are keyed
by ``name``; anything that already exists is left untouched, so the seeder
is safe to run on every startup and never overwrites an admin's edits.

Mission requirements go through
:func:`questboard.engine.requirements.parse_requirement` like any admin
definition would, so a typo here fails loudly at startup.
"""

from __future__ import annotations

import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from sqlalchemy import Engine, select

from questboard.config import DEFAULT_TIMEZONE
from questboard.database.engine import get_session
from questboard.database.models import (
    Badge,
    BadgeCategory,
    BadgeRarity,
    FeatureUnlock,
    Mission,
    MissionType,
    ResetFrequency,
    UnlockCategory,
    UnlockType,
)
from questboard.engine.requirements import parse_requirement

logger = logging.getLogger(__name__)

_LOCAL = ZoneInfo(DEFAULT_TIMEZONE)

# (name, description, icon, category, rarity, requirement_type, requirement_value)
BADGES: list[tuple[str, str, str, str, str, str, int]] = [
    # Exploration
    ("First Visit", "Check in at your first establishment", "\U0001f5fa", "exploration", "common", "check_in_count", 1),
    ("Zone Explorer", "Visit establishments in 3 different zones", "\U0001f30d", "exploration", "common", "unique_zones_visited", 3),
    ("Zone Master", "Visit all 9 zones", "\U0001f3c6", "exploration", "epic", "unique_zones_visited", 9),
    ("Venue Hopper", "Visit 25 different establishments", "\U0001f3c3", "exploration", "rare", "unique_establishments_visited", 25),
    ("Explorer Elite", "Visit 50 different establishments", "\U0001f396", "exploration", "epic", "unique_establishments_visited", 50),
    # Contribution
    ("First Review", "Write your first review", "✍", "contribution", "common", "review_count", 1),
    ("Critic Bronze", "Write 10 reviews", "\U0001f4dd", "contribution", "common", "review_count", 10),
    ("Critic Silver", "Write 50 reviews", "\U0001f4dd", "contribution", "rare", "review_count", 50),
    ("Critic Gold", "Write 100 reviews", "\U0001f4dd", "contribution", "epic", "review_count", 100),
    ("Critic Platinum", "Write 250 reviews", "\U0001f4dd", "contribution", "legendary", "review_count", 250),
    ("Photographer Bronze", "Upload 25 photos", "\U0001f4f8", "contribution", "common", "photo_count", 25),
    ("Photographer Silver", "Upload 100 photos", "\U0001f4f8", "contribution", "rare", "photo_count", 100),
    ("Photographer Gold", "Upload 250 photos", "\U0001f4f8", "contribution", "epic", "photo_count", 250),
    ("Complete Reviewer", "Write 5 reviews with photos and 100+ characters", "\U0001f4af", "contribution", "rare", "complete_reviews", 5),
    # Social
    ("Social Butterfly", "Get your first follower", "\U0001f98b", "social", "common", "follower_count", 1),
    ("Influencer Bronze", "Gain 10 followers", "\U0001f465", "social", "common", "follower_count", 10),
    ("Influencer Silver", "Gain 50 followers", "\U0001f465", "social", "rare", "follower_count", 50),
    ("Influencer Gold", "Gain 100 followers", "\U0001f465", "social", "epic", "follower_count", 100),
    ("Helpful Bronze", "Receive 50 helpful votes on your reviews", "\U0001f44d", "social", "rare", "helpful_votes_received", 50),
    ("Helpful Silver", "Receive 200 helpful votes on your reviews", "\U0001f44d", "social", "epic", "helpful_votes_received", 200),
    # Quality
    ("Detailed Reviewer", "Write 10 reviews with 200+ characters", "\U0001f4d6", "quality", "rare", "detailed_reviews", 10),
    ("Photo Pro", "Upload 10 photos at 1080p or better", "\U0001f4f7", "quality", "rare", "high_res_photos", 10),
    # Temporal
    ("Week Warrior", "Keep a 7-day activity streak", "\U0001f525", "temporal", "common", "streak_days", 7),
    ("Month Master", "Keep a 30-day activity streak", "\U0001f4c5", "temporal", "rare", "streak_days", 30),
    ("Dedication", "Keep a 90-day activity streak", "\U0001f4aa", "temporal", "epic", "streak_days", 90),
    ("Anniversary Bronze", "Be a member for 1 year", "\U0001f382", "temporal", "rare", "account_age_days", 365),
    ("Anniversary Silver", "Be a member for 2 years", "\U0001f382", "temporal", "epic", "account_age_days", 730),
]


def _daily(name, description, xp, requirements) -> dict:
    return {"name": name, "description": description, "type": MissionType.DAILY,
            "xp_reward": xp, "reset_frequency": ResetFrequency.DAILY,
            "requirements": requirements}


def _weekly(name, description, xp, requirements) -> dict:
    return {"name": name, "description": description, "type": MissionType.WEEKLY,
            "xp_reward": xp, "reset_frequency": ResetFrequency.WEEKLY,
            "requirements": requirements}


def _step(name, description, xp, requirements, badge=None) -> dict:
    return {"name": name, "description": description, "type": MissionType.NARRATIVE,
            "xp_reward": xp, "reset_frequency": ResetFrequency.NEVER,
            "requirements": requirements, "badge": badge,
            "sort_order": requirements["step"]}


GRAND_TOUR_ZONES = ["Soi 6", "Walking Street", "LK Metro", "Treetown", "Soi Buakhao", "Jomtien"]

MISSIONS: list[dict] = [
    # Daily
    _daily("Daily Reviewer", "Write 1 review today", 20,
           {"type": "write_reviews", "count": 1}),
    _daily("Photo Hunter", "Upload 3 photos today", 25,
           {"type": "upload_photos", "count": 3}),
    _daily("Explorer", "Visit 1 new establishment today", 15,
           {"type": "check_in", "count": 1, "unique": True}),
    _daily("Social Networker", "Follow 2 users today", 10,
           {"type": "follow_users", "count": 2}),
    _daily("Helpful Community Member", "Vote helpful on 5 reviews today", 15,
           {"type": "vote_helpful", "count": 5}),
    _daily("Quality Reviewer", "Write 1 review with a photo and 100+ characters today", 35,
           {"type": "write_quality_review", "count": 1, "min_length": 100, "with_photos": True}),
    # Weekly
    _weekly("Weekly Explorer", "Explore 3 different zones this week", 100,
            {"type": "visit_zones", "count": 3}),
    _weekly("Weekly Contributor", "Write 5 reviews with photos this week", 150,
            {"type": "write_reviews", "count": 5, "with_photos": True}),
    _weekly("Helpful Week", "Receive 10 helpful votes this week", 80,
            {"type": "receive_helpful_votes", "count": 10}),
    _weekly("Social Week", "Gain 5 new followers this week", 120,
            {"type": "gain_followers", "count": 5}),
    _weekly("Zone Master Weekly", "Check in at 10 different establishments this week", 200,
            {"type": "check_in", "count": 10, "unique": True}),
    _weekly("Photo Marathon", "Upload 20 photos this week", 100,
            {"type": "upload_photos", "count": 20}),
    # Narrative: Grand Tour
    *[
        _step(f"Grand Tour: {zone}", f"Check in 5 times in {zone} (Step {i}/7)", 50,
              {"type": "check_in_zone", "zone": zone, "count": 5,
               "quest_id": "grand_tour", "step": i})
        for i, zone in enumerate(GRAND_TOUR_ZONES, start=1)
    ],
    _step("Grand Tour: Complete", "Visit every zone (Step 7/7)", 200,
          {"type": "check_in_all_zones", "count": 9, "quest_id": "grand_tour", "step": 7},
          badge="Zone Master"),
    # Narrative: Reviewer Path
    _step("Reviewer Path: First Steps", "Write your first 5 reviews (Step 1/5)", 30,
          {"type": "write_reviews", "count": 5, "quest_id": "reviewer_path", "step": 1}),
    _step("Reviewer Path: Getting Better", "Write 5 reviews with photos (Step 2/5)", 60,
          {"type": "write_reviews", "count": 5, "with_photos": True,
           "quest_id": "reviewer_path", "step": 2}),
    _step("Reviewer Path: Quality Matters", "Write 5 reviews with 200+ characters (Step 3/5)", 80,
          {"type": "write_reviews", "count": 5, "min_length": 200,
           "quest_id": "reviewer_path", "step": 3}),
    _step("Reviewer Path: Consistency", "Write 25 reviews in total (Step 4/5)", 120,
          {"type": "write_reviews", "count": 25, "quest_id": "reviewer_path", "step": 4}),
    _step("Reviewer Path: Master Critic", "Write 50 reviews in total (Step 5/5)", 250,
          {"type": "write_reviews", "count": 50, "quest_id": "reviewer_path", "step": 5},
          badge="Critic Silver"),
    # Narrative: Social Butterfly
    _step("Social Butterfly: First Connections", "Follow 10 users (Step 1/4)", 40,
          {"type": "follow_users", "count": 10, "quest_id": "social_butterfly", "step": 1}),
    _step("Social Butterfly: Growing Network", "Gain 5 followers (Step 2/4)", 60,
          {"type": "gain_followers", "count": 5, "quest_id": "social_butterfly", "step": 2}),
    _step("Social Butterfly: Helpful Member", "Receive 25 helpful votes (Step 3/4)", 100,
          {"type": "receive_helpful_votes", "count": 25, "quest_id": "social_butterfly", "step": 3}),
    _step("Social Butterfly: Community Leader", "Gain 25 followers (Step 4/4)", 200,
          {"type": "gain_followers", "count": 25, "quest_id": "social_butterfly", "step": 4},
          badge="Influencer Bronze"),
    # Seasonal events, activated by an admin ahead of the date
    {"name": "Songkran Celebration",
     "description": "Check in at 10 establishments during Songkran (April 13-15)",
     "type": MissionType.EVENT, "xp_reward": 300, "reset_frequency": ResetFrequency.NEVER,
     "requirements": {"type": "check_in", "count": 10, "event": "songkran"},
     "is_active": False,
     "start_date": datetime(2025, 4, 13, 0, 0, tzinfo=_LOCAL),
     "end_date": datetime(2025, 4, 15, 23, 59, 59, tzinfo=_LOCAL)},
    {"name": "Halloween Night Out",
     "description": "Visit 5 establishments on Halloween night",
     "type": MissionType.EVENT, "xp_reward": 250, "reset_frequency": ResetFrequency.NEVER,
     "requirements": {"type": "check_in", "count": 5, "event": "halloween"},
     "is_active": False,
     "start_date": datetime(2025, 10, 31, 18, 0, tzinfo=_LOCAL),
     "end_date": datetime(2025, 11, 1, 6, 0, tzinfo=_LOCAL)},
]

# (name, description, level, category)
LEVEL_UNLOCKS: list[tuple[str, str, int, str]] = [
    ("photo_upload", "Upload photos with your reviews", 2, UnlockCategory.FEATURE),
    ("custom_title", "Pick a custom profile title", 3, UnlockCategory.TITLE),
    ("profile_themes", "Choose a profile theme", 4, UnlockCategory.COSMETIC),
    ("vip_badge_frame", "Gold frame around your badges", 5, UnlockCategory.COSMETIC),
    ("legend_title", "The Legend title", 6, UnlockCategory.TITLE),
    ("ambassador_title", "The Ambassador title", 7, UnlockCategory.TITLE),
]


def seed_reference_data(engine: Engine) -> dict[str, int]:
    """Insert missing catalogue rows.  Returns counts of rows added."""
    added = {"badges": 0, "missions": 0, "feature_unlocks": 0}

    with get_session(engine) as session:
        existing_badges = {b.name: b for b in session.scalars(select(Badge))}
        for order, (name, description, icon, category, rarity, req_type, req_value) in enumerate(BADGES):
            if name in existing_badges:
                continue
            badge = Badge(
                name=name,
                description=description,
                icon=icon,
                category=BadgeCategory(category).value,
                rarity=BadgeRarity(rarity).value,
                requirement_type=req_type,
                requirement_value=req_value,
                sort_order=order,
            )
            session.add(badge)
            existing_badges[name] = badge
            added["badges"] += 1
        session.flush()

        existing_missions = set(session.scalars(select(Mission.name)))
        for entry in MISSIONS:
            if entry["name"] in existing_missions:
                continue
            fields = dict(entry)
            badge_name = fields.pop("badge", None)
            fields["requirements"] = parse_requirement(fields["requirements"]).to_dict()
            fields["type"] = str(fields["type"])
            fields["reset_frequency"] = str(fields["reset_frequency"])
            if badge_name is not None:
                fields["badge_id"] = existing_badges[badge_name].id
            session.add(Mission(**fields))
            added["missions"] += 1

        existing_unlocks = set(session.scalars(select(FeatureUnlock.name)))
        for name, description, level, category in LEVEL_UNLOCKS:
            if name in existing_unlocks:
                continue
            session.add(FeatureUnlock(
                name=name,
                description=description,
                unlock_type=UnlockType.LEVEL.value,
                unlock_value=level,
                category=str(category),
            ))
            added["feature_unlocks"] += 1

    if any(added.values()):
        logger.info(
            "Seeded %d badges, %d missions, %d feature unlocks",
            added["badges"], added["missions"], added["feature_unlocks"],
        )
    return added
