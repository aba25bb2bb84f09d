import csv
import logging
import re
import sys
from typing import Dict, Optional, Tuple

from postgrest.exceptions import APIError

from dojo.classes import create_class, parse_schedule_pairs
from dojo.db import get_client
from dojo.errors import DojoError
from dojo.log import configure_logging

logger = logging.getLogger(__name__)


# CSV column names (update these if your CSV headers differ)
CSV_COLUMNS = {
    'class_name': 'Class Name',
    'program': 'Program',
    'instructor': 'Instructor',
    'schedule': 'Schedule',
    'max_size': 'Max Size'
}


def clean_string(s: str) -> str:
    """Replace non-breaking spaces (\xa0) with regular spaces and normalize hyphens."""
    if not s:
        return s
    s = s.replace('\xa0', ' ')
    s = re.sub(r'\s+', ' ', s)
    s = s.replace('–', '-').replace('—', '-')
    return s.strip()


def parse_instructor_name(instructor: str) -> Tuple[Optional[str], Optional[str]]:
    """Parse instructor name (e.g., 'Tanaka, Kenji' -> ('Kenji', 'Tanaka'))."""
    instructor = clean_string(instructor)
    if not instructor:
        return None, None
    match = re.match(r'([^,]+),\s*([^\(]+)(?:\s*\((.+)\))?', instructor)
    if not match:
        logger.warning(f"Invalid instructor name format: {instructor}")
        return None, None
    last_name, first_name, _ = match.groups()
    return first_name.strip(), last_name.strip()


def get_instructor_id(supabase, first_name: str, last_name: str) -> Optional[str]:
    """Look up an instructor user by first_name and last_name."""
    try:
        response = supabase.table('users').select('id').eq('role', 'instructor') \
            .eq('first_name', first_name).eq('last_name', last_name).execute()
        if response.data:
            return response.data[0]['id']
    except Exception as e:
        logger.error(f"Error looking up instructor {first_name} {last_name}: {str(e)}")
    return None


def parse_max_size(value: str) -> Optional[int]:
    """Parse '12', '8 / 12' or '' -> max class size."""
    value = clean_string(value)
    if not value:
        return None
    match = re.search(r'(\d+)\s*$', value)
    return int(match.group(1)) if match else None


def load_program_ids(supabase) -> Dict[str, str]:
    programs = supabase.table('programs').select('id, name').execute().data
    return {p['name'].strip().lower(): p['id'] for p in programs}


def validate_csv_headers(reader: csv.DictReader) -> bool:
    """Validate that required CSV headers are present, handling BOM."""
    required_headers = list(CSV_COLUMNS.values())
    actual_headers = [h.replace('\ufeff', '') for h in (reader.fieldnames or [])]
    missing_headers = [h for h in required_headers if h not in actual_headers]
    if missing_headers:
        logger.error(f"Missing CSV headers: {', '.join(missing_headers)}")
        return False
    return True


def import_classes(csv_file: str, supabase=None) -> Dict[str, int]:
    """Import classes from CSV into Supabase. Returns imported/skipped counts."""
    supabase = supabase or get_client()
    counts = {'imported': 0, 'skipped': 0}
    seen_classes = set()
    try:
        with open(csv_file, 'r', encoding='utf-8-sig') as f:
            reader = csv.DictReader(f)
            if not validate_csv_headers(reader):
                logger.error(f"CSV file {csv_file} has invalid headers")
                return counts

            program_ids = load_program_ids(supabase)
            for row in reader:
                row = {k.replace('\ufeff', ''): clean_string(v or '') for k, v in row.items()}
                logger.info(f"Processing row: {row}")

                class_name = re.sub(r'\s*\[.*\]', '', row[CSV_COLUMNS['class_name']]).strip()
                program_name = row[CSV_COLUMNS['program']]
                class_key = class_name.lower()
                if not class_name or class_key in seen_classes:
                    logger.warning(f"Skipping duplicate or unnamed class: {class_name}")
                    counts['skipped'] += 1
                    continue
                seen_classes.add(class_key)

                program_id = program_ids.get(program_name.lower())
                if not program_id:
                    logger.warning(f"Program not found for class {class_name}: {program_name}")
                    counts['skipped'] += 1
                    continue

                try:
                    schedule_pairs = parse_schedule_pairs(row[CSV_COLUMNS['schedule']])

                    first_name, last_name = parse_instructor_name(row[CSV_COLUMNS['instructor']])
                    instructor_id = get_instructor_id(supabase, first_name, last_name) if first_name and last_name else None
                    if not instructor_id and first_name and last_name:
                        logger.warning(f"Instructor not found for class {class_name}: {first_name} {last_name}")

                    class_data = {
                        'name': class_name,
                        'program_id': program_id,
                        'instructor_id': instructor_id,
                        'max_capacity': parse_max_size(row[CSV_COLUMNS['max_size']]),
                        'schedule_pairs': schedule_pairs,
                    }
                    logger.info(f"Inserting class_data: {class_data}")
                    create_class(supabase, class_data)
                    counts['imported'] += 1
                except (DojoError, APIError) as e:
                    logger.error(f"Error importing class {class_name}: {str(e)}")
                    counts['skipped'] += 1
    except FileNotFoundError:
        logger.error(f"CSV file {csv_file} not found")
    logger.info(f"Class import finished: {counts}")
    return counts


if __name__ == "__main__":
    configure_logging('import_classes.log')
    import_classes(sys.argv[1] if len(sys.argv) > 1 else 'classes.csv')
