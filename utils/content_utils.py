import json

import markdown

LESSON_CONTENT_TYPES = ('video', 'text', 'quiz', 'coding')

# Quiz answers stay on the server
HIDDEN_LESSON_PROPERTIES = ('correct_answer_index',)


def render_markdown_content(md_text):
    return markdown.markdown(md_text or '', extensions=['fenced_code', 'tables'])


def parse_element_properties(raw):
    if not raw:
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def serialize_lesson(row, include_content=True, reveal_answers=False):
    """Lesson row for API output; text lessons get their markdown rendered to content_html."""
    lesson = dict(row)
    lesson['is_preview'] = bool(lesson.get('is_preview'))
    props = parse_element_properties(lesson.get('element_properties'))
    if not include_content:
        lesson.pop('element_properties', None)
        return lesson

    if not reveal_answers:
        props = {key: value for key, value in props.items() if key not in HIDDEN_LESSON_PROPERTIES}
    lesson['element_properties'] = props
    if lesson.get('content_type') == 'text':
        lesson['content_html'] = render_markdown_content(props.get('markdown_content') or lesson.get('description') or '')
    return lesson


def group_lessons_by_module(modules, lessons):
    """Attach lessons to their modules, keeping both in order_index order."""
    grouped = []
    by_module = {}
    for module_row in modules:
        module = dict(module_row)
        module['lessons'] = []
        by_module[module['id']] = module
        grouped.append(module)
    for lesson in lessons:
        module = by_module.get(lesson['module_id'])
        if module is not None:
            module['lessons'].append(lesson)
    return grouped
