"""
Tests for personalization decay and prompt rendering.
"""

from datetime import timedelta

import pytest
from conftest import BASE_TIME

from hope_engine.models.core import (AdaptationRule, BehavioralTendency, CommunicationPreferences,
                                     PersonalizationProfile, UserIntent, UserOverrides)
from hope_engine.services.personalization import (DEFAULT_PROMPT_VERBOSITY_LINE, build_enforcement_rules,
                                                  build_profile_summary, decay, decay_factor, track_engagement,
                                                  verbosity_directive)

NOW = BASE_TIME


def weeks_ago(weeks):
    return NOW - timedelta(weeks=weeks)


def make_profile(**overrides):
    values = dict(user_id='u1',
                  communication=CommunicationPreferences(style='direct', verbosity='concise', format='structured',
                                                         emoji_usage='none'),
                  decay_rate=0.05,
                  data_quality=0.8,
                  last_analysis=NOW,
                  version=4)
    values.update(overrides)
    return PersonalizationProfile(**values)


class TestDecay:

    def test_factor_never_negative(self):
        assert decay_factor(0, 0.05) == 1.0
        assert decay_factor(10, 0.05) == pytest.approx(0.5)
        assert decay_factor(40, 0.05) == 0.0

    def test_ten_week_old_tendency_is_not_rendered(self):
        profile = make_profile(tendencies=[
            BehavioralTendency(pattern='journals late at night', confidence=0.9, frequency=1.0,
                               last_observed=weeks_ago(10)),
        ])
        decayed = decay(profile, NOW)

        assert decayed.tendencies[0].confidence == pytest.approx(0.45)
        assert decayed.tendencies[0].frequency == pytest.approx(0.5)
        assert 'journals late at night' not in build_enforcement_rules(decayed)

    def test_fully_decayed_tendency_is_dropped(self):
        profile = make_profile(tendencies=[
            BehavioralTendency(pattern='old habit', confidence=0.9, frequency=1.0, last_observed=weeks_ago(20)),
            BehavioralTendency(pattern='fresh habit', confidence=0.6, frequency=1.0, last_observed=NOW),
            BehavioralTendency(pattern='strong habit', confidence=0.95, frequency=1.0, last_observed=NOW),
        ])
        decayed = decay(profile, NOW)

        assert [t.pattern for t in decayed.tendencies] == ['strong habit', 'fresh habit']

    def test_rules_decay_and_sort_by_priority(self):
        profile = make_profile(rules=[
            AdaptationRule(condition='user is stressed', action='offer grounding', priority=0.8, confidence=0.9,
                           last_applied=NOW),
            AdaptationRule(condition='user mentions sleep', action='ask about routine', priority=0.9, confidence=0.5,
                           last_applied=weeks_ago(10)),
            AdaptationRule(condition='user jokes', action='joke back', priority=0.95, confidence=0.8,
                           last_applied=weeks_ago(6)),
        ])
        decayed = decay(profile, NOW)

        assert [r.condition for r in decayed.rules] == ['user jokes', 'user is stressed']
        assert decayed.rules[0].confidence == pytest.approx(0.56)
        assert decayed.rules[0].effectiveness == pytest.approx(0.35)

    def test_data_quality_decays_from_last_analysis(self):
        decayed = decay(make_profile(last_analysis=weeks_ago(4)), NOW)
        assert decayed.data_quality == pytest.approx(0.64)

    def test_input_profile_is_not_modified(self):
        tendency = BehavioralTendency(pattern='p', confidence=0.9, frequency=1.0, last_observed=weeks_ago(10))
        profile = make_profile(tendencies=[tendency])
        decay(profile, NOW)

        assert tendency.confidence == 0.9


class TestEnforcementRules:

    def test_full_block(self):
        profile = make_profile(
            overrides=UserOverrides(topics_to_avoid=['ex-partner'], preferred_topics=['running']),
            topics_to_avoid=['work'],
            intent=UserIntent(long_term_goals=['sleep better'], current_focus=['exam prep']),
            tendencies=[BehavioralTendency(pattern=f'pattern {idx}', confidence=0.9 - idx * 0.05, frequency=1.0,
                                           last_observed=NOW) for idx in range(4)],
            rules=[AdaptationRule(condition=f'cond {idx}', action=f'act {idx}', priority=0.99 - idx * 0.01,
                                  confidence=0.9, last_applied=NOW) for idx in range(7)] + [
                AdaptationRule(condition='low', action='skip', priority=0.5, confidence=0.9, last_applied=NOW)
            ])
        text = build_enforcement_rules(decay(profile, NOW))

        assert '**Communication Style:** You MUST communicate in a direct style.' in text
        assert 'Limit to 2-3 sentences' in text
        assert '**Format:** Structure responses' in text
        assert '**Emojis:** Do NOT use emojis' in text
        assert 'Do NOT bring up or focus on: ex-partner, work' in text
        assert 'When relevant, focus on: running' in text
        assert 'Keep these goals in mind: sleep better' in text
        assert 'Current priorities: exam prep' in text
        assert 'User typically: pattern 0, pattern 1, pattern 2\n' in text
        assert '1. IF cond 0 THEN act 0' in text
        assert '5. IF cond 4 THEN act 4' in text
        assert 'cond 5' not in text
        assert 'IF low' not in text
        assert '**=== END PERSONALIZATION RULES ===**' in text
        assert 'data quality is moderate' not in text

    def test_low_data_quality_adds_caveat(self):
        text = build_enforcement_rules(decay(make_profile(data_quality=0.3), NOW))
        assert '**Note:** Personalization data quality is moderate' in text

    def test_override_style_wins(self):
        profile = make_profile(overrides=UserOverrides(communication_style='gentle', verbosity='detailed'))
        text = build_enforcement_rules(decay(profile, NOW))

        assert 'communicate in a gentle style' in text
        assert 'keep responses detailed' in text

    def test_missing_or_disabled_profile_renders_nothing(self):
        assert build_enforcement_rules(None) == ''
        assert build_enforcement_rules(make_profile(enabled=False)) == ''
        assert build_profile_summary(None) == ''

    def test_verbosity_directive(self):
        assert verbosity_directive(None) == DEFAULT_PROMPT_VERBOSITY_LINE
        assert verbosity_directive(make_profile()).startswith('Respond concisely in 2-3 lines')


class TestProfileSummary:

    def test_lists_confident_patterns(self):
        profile = make_profile(tendencies=[
            BehavioralTendency(pattern='opens up slowly', confidence=0.85, frequency=1.0, last_observed=NOW),
            BehavioralTendency(pattern='uncertain', confidence=0.6, frequency=1.0, last_observed=NOW),
        ])
        summary = build_profile_summary(decay(profile, NOW))

        assert '1. opens up slowly (confidence: 85%)' in summary
        assert 'uncertain' not in summary
        assert '- Style: direct' in summary


class TestTrackEngagement:

    def test_moving_average_trend_and_version(self):
        profile = make_profile()
        profile.engagement.avg_messages_per_session = 10
        profile.engagement.avg_session_length = 20

        updated = track_engagement(profile, session_length=30, messages_count=30, feedback='positive', now=NOW)

        assert updated.engagement.avg_messages_per_session == pytest.approx(16.0)
        assert updated.engagement.avg_session_length == pytest.approx(23.0)
        assert updated.engagement.engagement_trend == 'increasing'
        assert updated.engagement.response_quality == pytest.approx(0.59)
        assert updated.engagement.session_count == 1
        assert updated.version == 5
        assert profile.version == 4
