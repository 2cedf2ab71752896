"""
Sampling configuration loader — profiles, prompt templates, pipeline steps.

YAML file with in-memory cache and hardcoded fallback if the file is missing.
"""
import logging
import os
from typing import Any, Dict, List

import yaml

from visibility.config import JOB_TYPES
from visibility.errors import UnknownProfile

logger = logging.getLogger('pipeline.sampling_config')


_sampling_config = None


def _default_config():
    """Hardcoded fallback if YAML is missing."""
    return {
        'version': 'default',
        'profiles': {
            'lite': {
                'models': ['gpt-4', 'claude-opus'],
                'prompts': ['def_01', 'local_01'],
                'paraphrases': 2,
                'max_tokens': 1000,
                'steps': ['onboard', 'normalize', 'sample', 'score', 'assemble_report'],
            },
            'standard': {
                'models': ['gpt-4', 'claude-opus', 'gemini-pro'],
                'prompts': ['def_01', 'local_01', 'comp_01'],
                'paraphrases': 3,
                'max_tokens': 2000,
                'steps': ['onboard', 'normalize', 'embed', 'sample', 'score', 'assemble_report'],
            },
            'full': {
                'models': ['gpt-4', 'claude-opus', 'gemini-pro', 'grok-beta', 'mistral-large'],
                'prompts': ['def_01', 'local_01', 'comp_01', 'tech_01', 'brand_01'],
                'paraphrases': 5,
                'max_tokens': 4000,
                'steps': ['onboard', 'normalize', 'embed', 'sample', 'score', 'assemble_report'],
            },
            'custom': {
                'models': [],
                'prompts': [],
                'paraphrases': 1,
                'max_tokens': 2000,
                'steps': ['onboard', 'normalize', 'embed', 'sample', 'score', 'assemble_report'],
            },
        },
        'prompt_templates': {
            'def_01': {
                'template': "What can you tell me about {brand_name}? I'm looking for information "
                            "about their services, products, and reputation.",
                'intent': 'general_inquiry',
            },
            'local_01': {
                'template': "I'm looking for a {service_type} company in {location}. "
                            "What do you know about {brand_name}?",
                'intent': 'local_search',
            },
            'comp_01': {
                'template': "I'm comparing {brand_name} with {competitor}. What are the key "
                            "differences and which would you recommend?",
                'intent': 'comparison',
            },
            'tech_01': {
                'template': "I need technical information about {brand_name}'s solutions. "
                            "What technical capabilities do they offer?",
                'intent': 'technical',
            },
            'brand_01': {
                'template': "What is {brand_name}'s reputation in the industry? "
                            "Are they a trusted company?",
                'intent': 'reputation',
            },
        },
    }


def load_sampling_config() -> dict:
    """Load sampling config from YAML, with in-memory cache and hardcoded fallback."""
    global _sampling_config
    if _sampling_config is not None:
        return _sampling_config

    config_path = os.path.join(os.path.dirname(__file__), 'sampling_config.yaml')
    try:
        with open(config_path, 'r') as f:
            _sampling_config = yaml.safe_load(f)
        logger.info("Config loaded from YAML (version=%s)", _sampling_config.get('version', '?'))
    except Exception as e:
        logger.warning("YAML config not found (%s), using defaults", e)
        _sampling_config = _default_config()

    return _sampling_config


def get_profile(name: str) -> Dict[str, Any]:
    """Return a copy of a named profile; raises UnknownProfile."""
    profiles = load_sampling_config().get('profiles', {})
    if name not in profiles:
        raise UnknownProfile(f"Unknown profile '{name}'. Available: {sorted(profiles)}")
    return dict(profiles[name])


def get_pipeline_steps(name: str) -> List[str]:
    """Ordered job types for a profile; raises UnknownProfile on an empty or unknown step."""
    steps = list(get_profile(name).get('steps') or [])
    if not steps:
        raise UnknownProfile(f"Profile '{name}' defines no pipeline steps")
    unknown = [s for s in steps if s not in JOB_TYPES]
    if unknown:
        raise UnknownProfile(f"Profile '{name}' has unknown steps: {unknown}")
    return steps


def get_prompt_templates() -> Dict[str, Dict[str, str]]:
    return load_sampling_config().get('prompt_templates', {})


def reset_cache():
    """Reset the in-memory cache (useful for testing)."""
    global _sampling_config
    _sampling_config = None
