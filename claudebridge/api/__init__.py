"""Gateway API layer: conversion, streaming, truncation and HTTP routes."""
