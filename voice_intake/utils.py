# voice_intake/utils.py

import json
import logging
import re

import commentjson
import yaml
from json_repair import repair_json

from voice_intake.config import PROJECT_ID, REGION
from voice_intake.llm_client import ChatLlmClient

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)

logger = logging.getLogger("voice_intake")


class Utils():
    llm_timeout = 60.0

    def color_print(self, text, color=None, end_value=None):
        COLOR_CODES = {
            'black': '30', 'red': '31', 'green': '32', 'yellow': '33', 'blue': '34', 'magenta': '35',
            'cyan': '36', 'white': '37', 'bright_black': '90', 'bright_red': '91', 'bright_green': '92',
            'bright_yellow': '93', 'bright_blue': '94', 'bright_magenta': '95', 'bright_cyan': '96', 'bright_white': '97'
        }
        if color and color.lower() in COLOR_CODES:
            color_code = COLOR_CODES[color.lower()]
            text = f"\033[{color_code}m{text}\033[0m"
        logger.info(str(text))
        return False

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code or "")

    def load_fault_tolerant_json(self, json_str):
        """
        Load a JSON-like model answer: commentjson, then yaml on a sanitized copy,
        then json_repair.
        Raises ValueError when nothing yields a mapping or list.
        """
        def remove_comments(input_str):
            return re.sub(r'//.*?$|/\*.*?\*/', '', input_str, flags=re.MULTILINE | re.DOTALL)

        def escape_string_segment(match):
            content = match.group(1)
            content = re.sub(r'(?<!\\)\\(?![bfnrtu"\\/])', r'\\\\', content)
            content = re.sub(r'(?<!\\)\n', r'\\n', content)
            return f'"{content}"'

        def sanitize_json_string(input_str):
            input_str = remove_comments(self.clean_triple_backticks(input_str))
            return re.sub(r'(?<!\\)"((?:[^"\\]|\\.)*?)"', escape_string_segment, input_str, flags=re.DOTALL)

        def load_json(raw):
            err = ""
            try:
                data = commentjson.loads(self.clean_triple_backticks(raw))
                if isinstance(data, (dict, list)):
                    return data, ""
                err = f"top-level value is {type(data).__name__}"
            except Exception as e:
                err = str(e)
            try:
                data = yaml.safe_load(sanitize_json_string(raw))
                if isinstance(data, (dict, list)):
                    return data, ""
                err += "\n--\nYAML parsing did not yield an object"
            except yaml.YAMLError as e:
                err += "\n--\n" + str(e)
            return None, err

        json_str = json_str or ""
        data, err = load_json(json_str)
        if data is not None:
            return data
        r_data, r_err = load_json(repair_json(self.clean_triple_backticks(json_str)))
        if r_data is not None:
            return r_data
        raise ValueError(f"load_fault_tolerant_json: JSON parsing failed: {r_err}")

    def _coerce_field_to_str(self, value) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        try:
            return json.dumps(value, indent=2, ensure_ascii=False, default=str)
        except TypeError:
            return str(value).strip()

    def unsafe_string_format(self, dest_string, print_unused_keys_report=True, **kwargs):
        """
        Replace only the {KEY} placeholders whose key is passed in kwargs.
        Other braces (JSON examples in prompts) are left untouched.
        """
        missing_keys = []

        def replacer(match):
            key = match.group(1)
            if key in kwargs:
                return str(kwargs[key])
            missing_keys.append(key)
            return match.group(0)

        result = re.compile(r'\{(\w+)\}').sub(replacer, dest_string)
        if missing_keys and print_unused_keys_report:
            logger.debug(f"Missing keys within string-to-format in unsafe_string_format: {', '.join(missing_keys)}")
        return result

    def to_speakable_text(self, text) -> str:
        """Strip markdown markup so a speech engine does not read it aloud."""
        text = self.clean_triple_backticks(text or "")
        text = re.sub(r'`([^`]*)`', r'\1', text)
        text = re.sub(r'^\s{0,3}#{1,6}\s*', '', text, flags=re.MULTILINE)
        text = re.sub(r'^\s*(?:[-*+•]|\d+[.)])\s+', '', text, flags=re.MULTILINE)
        text = re.sub(r'(\*\*|__)(.+?)\1', r'\2', text)
        text = re.sub(r'(?<!\w)[*_](\S(?:.*?\S)?)[*_](?!\w)', r'\1', text)
        text = re.sub(r'\[([^\]]+)\]\([^)]+\)', r'\1', text)
        text = re.sub(r'[ \t]+', ' ', text)
        text = re.sub(r'\n{2,}', '\n', text)
        return text.strip()

    # -----------------------
    # LLM plumbing
    # -----------------------

    def _build_chat_llm_for_model(self, model_name: str, timeout: float | None = None,
                                  project: str | None = None, region: str | None = None):
        """
        Build a chat LLM for the given model name. Returns None if creation fails.
        """
        if not timeout:
            timeout = self.llm_timeout
        try:
            return ChatLlmClient(
                model_name=model_name,
                vertex_project=project or PROJECT_ID,
                vertex_region=region or REGION,
                timeout=timeout,
            )
        except Exception as e:
            logger.warning(f"Could not initialize chat LLM '{model_name}': {e}")
            return None

