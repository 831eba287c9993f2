# kalina: Prompt templates shipped as package data; loaded by kalina.prompts.get_prompt.
