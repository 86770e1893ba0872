import logging
import re

import commentjson
import yaml
from json_repair import repair_json

logger = logging.getLogger("nvq_extraction")


class Utils():
    SessionFactory: None

    def color_print(self, text, color=None, end_value=None):
        COLOR_CODES = {
            'black': '30', 'red': '31', 'green': '32', 'yellow': '33', 'blue': '34', 'magenta': '35',
            'cyan': '36', 'white': '37', 'bright_black': '90', 'bright_red': '91', 'bright_green': '92',
            'bright_yellow': '93', 'bright_blue': '94', 'bright_magenta': '95', 'bright_cyan': '96', 'bright_white': '97'
        }
        if color and color.lower() in COLOR_CODES:
            color_code = COLOR_CODES[color.lower()]
            start = f"\033[{color_code}m"
            end = "\033[0m"
            text = f"{start}{text}{end}"
        logger.info(str(text))
        return False

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code)

    def extract_first_json_object(self, raw: str) -> str | None:
        """
        Returns the first balanced top-level {...} block of `raw`, braces inside
        string literals ignored. Falls back to the greedy first-{ to last-} span
        when the object never closes. None when there is no '{' at all.
        """
        if not raw:
            return None
        start = raw.find("{")
        if start < 0:
            return None

        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(raw)):
            ch = raw[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return raw[start:i + 1]

        greedy = re.search(r"\{[\s\S]*\}", raw)
        return greedy.group(0) if greedy else raw[start:]

    def load_fault_tolerant_json(self, json_str, ensure_ordered=False):
        """
        Attempts to load a JSON-like string using commentjson, then pyyaml, then json_repair.
        Raises ValueError when nothing yields a JSON object/array.
        """
        def sanitize_json_string(input_str):
            """
            Escapes problematic characters inside strings and drops // and /* */ comments.
            """
            def process_string_segment(match):
                content = match.group(1)
                # unescaped backslashes not part of escape sequences
                content = re.sub(r'(?<!\\)\\(?![bfnrtu"\\/])', r'\\\\', content)
                # literal newlines inside the string
                content = re.sub(r'(?<!\\)\n', r'\\n', content)
                content = re.sub(r'(?<!\\)"', r'\"', content)
                return f'"{content}"'

            input_str = self.clean_triple_backticks(input_str)
            input_str = re.sub(r'//.*?$|/\*.*?\*/', '', input_str, flags=re.MULTILINE | re.DOTALL)
            return re.sub(r'(?<!\\)"((?:[^"\\]|\\.)*?)"', process_string_segment, input_str, flags=re.DOTALL)

        def load_json(json_str, ensure_ordered):
            from collections import OrderedDict
            err, data = "", None
            try:
                if ensure_ordered:
                    data = commentjson.loads(self.clean_triple_backticks(json_str), object_pairs_hook=OrderedDict)
                else:
                    data = commentjson.loads(self.clean_triple_backticks(json_str))
                return data, ""
            except Exception as e:
                err = str(e)
                data = None
            try:
                data = yaml.safe_load(sanitize_json_string(json_str))
                if not isinstance(data, (dict, list)):
                    raise ValueError("load_fault_tolerant_json: YAML parsing did not produce an object.")
                return data, ""
            except Exception as e:
                err += "\n--\n" + str(e)
                data = None
            return data, err

        data, err = load_json(json_str, ensure_ordered)
        if isinstance(data, (dict, list)):
            return data
        repaired_json_str = repair_json(json_str)
        r_data, r_err = load_json(repaired_json_str, ensure_ordered)
        if isinstance(r_data, (dict, list)) and r_data:
            return r_data
        raise ValueError(f"load_fault_tolerant_json: JSON parsing failed: {r_err or err} \n- Original JSON: {json_str[:500]}")

    def parse_generator_object(self, raw: str) -> dict | None:
        """
        Lenient parse of a generator reply into a dict: first top-level object,
        then the tolerant loaders. None when nothing usable comes back.
        """
        block = self.extract_first_json_object(self.clean_triple_backticks(raw or ""))
        if block is None:
            return None
        try:
            data = self.load_fault_tolerant_json(block)
        except ValueError as e:
            logger.warning("Generator reply is not parseable JSON: %s", e)
            return None
        return data if isinstance(data, dict) else None

    def unsafe_string_format(self, dest_string, print_unused_keys_report=True, **kwargs):
        """
        Formats a destination string by replacing placeholders with corresponding values from kwargs.

        it works differently from the standard "format" method as instead of looking for all the potential keys,
        looks only for the keys as passed in kwargs (JSON braces in prompts stay untouched)
        """
        missing_keys = []

        def replacer(match):
            key = match.group(1)
            if key in kwargs:
                return str(kwargs[key])
            missing_keys.append(key)
            return match.group(0)

        pattern = re.compile(r'\{(\w+)\}')
        result = pattern.sub(replacer, dest_string)
        if missing_keys and print_unused_keys_report:
            logger.debug(f"\033[93m\033[3mMissing keys within string-to-format in unsafe_string_format: {', '.join(missing_keys)}\033[0m")
        return result
