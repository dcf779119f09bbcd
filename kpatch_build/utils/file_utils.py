#!/usr/bin/env python3
"""
File utilities for the patch module build system.
Provides workspace and object-tree file operations.
"""

import hashlib
import shutil
from pathlib import Path
from typing import List


def ensure_directory(path: str) -> Path:
    """
    Ensure a directory exists, creating it if necessary.
    
    Args:
        path: Directory path to create
        
    Returns:
        Path object for the directory
    """
    dir_path = Path(path)
    dir_path.mkdir(parents=True, exist_ok=True)
    return dir_path


def calculate_file_hash(file_path: str, algorithm: str = 'sha256') -> str:
    """
    Calculate hash of a file.
    
    Args:
        file_path: Path to file
        algorithm: Hash algorithm to use
        
    Returns:
        Hex digest of file hash
    """
    hash_obj = hashlib.new(algorithm)
    
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(4096), b""):
            hash_obj.update(chunk)
            
    return hash_obj.hexdigest()


def copy_into_tree(source_root: str, relative_path: str, destination_root: str) -> Path:
    """
    Copy a tree-relative file into the same relative location under another root.
    
    Args:
        source_root: Root the relative path is resolved against
        relative_path: Tree-relative path of the file
        destination_root: Root of the destination tree
        
    Returns:
        Path of the copied file
    """
    target = Path(destination_root) / relative_path
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(Path(source_root) / relative_path, target)
    return target


def find_files(directory: str, pattern: str = "*", recursive: bool = True) -> List[str]:
    """
    Find files matching a pattern in a directory, sorted by path.
    
    Args:
        directory: Directory to search in
        pattern: Glob pattern to match
        recursive: Whether to search recursively
        
    Returns:
        List of matching file paths
    """
    dir_path = Path(directory)
    if not dir_path.exists():
        return []
        
    if recursive:
        matches = dir_path.rglob(pattern)
    else:
        matches = dir_path.glob(pattern)
        
    return sorted(str(match) for match in matches if match.is_file())


def read_file_lines(file_path: str, strip_whitespace: bool = True) -> List[str]:
    """
    Read all lines from a file.
    
    Args:
        file_path: Path to file
        strip_whitespace: Whether to strip whitespace from lines
        
    Returns:
        List of lines from file
    """
    with open(file_path, 'r') as f:
        lines = f.readlines()
        
    if strip_whitespace:
        lines = [line.strip() for line in lines]
        
    return lines
